"""
gsn-relay

Meta-transaction relay protocol engine: a Forwarder that verifies EIP-712
signed requests and executes each exactly once, a StakeManager holding the
slashable stake of relay managers, and a RelayHub that runs the relay call
lifecycle and charges paymasters from a prepaid ledger.

Usage:
    # Relay one call end to end on an in-process host
    gsn-relay demo

    # Sign a RelayRequest
    gsn-relay sign-request --private-key 0x... --forwarder 0x... --to 0x... \
        --paymaster 0x... --worker 0x...
"""

__version__ = "0.1.0"

from .config import MeteringModel, RelayHubConfig, Settings, get_settings
from .db import EventDatabase
from .errors import (
    BudgetError,
    ForwarderError,
    GuardError,
    OutOfGas,
    PaymasterBalanceChangedError,
    PaymasterError,
    PenalizerError,
    RecipientError,
    RelayHubError,
    Revert,
    StakeManagerError,
)
from .events import Event, EventLog
from .forwarder import Forwarder
from .host import Contract, GasMeter, Host
from .models import (
    CallContext,
    ForwardRequest,
    ForwardResult,
    GasAndDataLimits,
    RelayCallResult,
    RelayCallStatus,
    RelayData,
    RelayRequest,
    StakeInfo,
)
from .paymaster import AcceptEverythingPaymaster, BasePaymaster
from .penalizer import Penalizer
from .recipient import BaseRelayRecipient, encode_function_call, external, function_selector
from .relay_hub import RelayHub, encode_relay_call
from .stake_manager import StakeManager

__all__ = [
    "__version__",
    "AcceptEverythingPaymaster",
    "BasePaymaster",
    "BaseRelayRecipient",
    "BudgetError",
    "CallContext",
    "Contract",
    "Event",
    "EventDatabase",
    "EventLog",
    "ForwardRequest",
    "ForwardResult",
    "Forwarder",
    "ForwarderError",
    "GasAndDataLimits",
    "GasMeter",
    "GuardError",
    "Host",
    "MeteringModel",
    "OutOfGas",
    "PaymasterBalanceChangedError",
    "PaymasterError",
    "Penalizer",
    "PenalizerError",
    "RecipientError",
    "RelayCallResult",
    "RelayCallStatus",
    "RelayData",
    "RelayHub",
    "RelayHubConfig",
    "RelayHubError",
    "RelayRequest",
    "Revert",
    "Settings",
    "StakeInfo",
    "StakeManager",
    "StakeManagerError",
    "encode_function_call",
    "encode_relay_call",
    "external",
    "function_selector",
    "get_settings",
]
