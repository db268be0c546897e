"""
Data model shared by the Forwarder, StakeManager and RelayHub.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MAX_UINT256 = 2**256 - 1


@dataclass(frozen=True)
class ForwardRequest:
    """The signer's intent, as signed and replay-guarded by the Forwarder."""

    from_address: str  # Signer
    to: str  # Target contract
    value: int  # Native coin forwarded with the call
    gas: int  # Gas limit for the forwarded call
    nonce: int  # Must equal the Forwarder's nonce for from_address
    data: bytes  # Opaque call payload
    valid_until: int = 0  # Last valid block height (inclusive), 0 = no expiry


@dataclass(frozen=True)
class RelayData:
    """Sponsor economics attached to a relayed request."""

    gas_price: int
    pct_relay_fee: int
    base_relay_fee: int
    relay_worker: str
    paymaster: str
    forwarder: str
    paymaster_data: bytes = b""
    client_id: int = 0


@dataclass(frozen=True)
class RelayRequest:
    """A forward request plus the relay data the signer also signed."""

    request: ForwardRequest
    relay_data: RelayData


@dataclass(frozen=True)
class GasAndDataLimits:
    """Limits a paymaster declares for the requests it sponsors."""

    acceptance_budget: int
    pre_relayed_call_gas_limit: int
    post_relayed_call_gas_limit: int
    calldata_size_limit: int


@dataclass
class StakeInfo:
    """Stake record of one relay manager."""

    stake: int = 0
    unstake_delay: int = 0
    withdraw_block: int = 0  # 0 = no withdrawal scheduled
    owner: str = ZERO_ADDRESS


class RelayCallStatus(IntEnum):
    """Terminal outcome of one relay attempt."""

    OK = 0
    RELAYED_CALL_FAILED = 1
    REJECTED_BY_PRE_RELAYED = 2
    REJECTED_BY_FORWARDER = 3
    REJECTED_BY_RECIPIENT_REVERT = 4
    POST_RELAYED_FAILED = 5
    PAYMASTER_BALANCE_CHANGED = 6


@dataclass(frozen=True)
class ForwardResult:
    """Result of Forwarder.execute."""

    forwarder_success: bool  # False only when verification failed
    call_success: bool
    return_data: bytes = b""


@dataclass(frozen=True)
class RelayCallResult:
    """Result of RelayHub.relay_call."""

    paymaster_accepted: bool  # True when the paymaster was charged
    status: RelayCallStatus
    return_value: bytes = b""
    charge: int = 0
    gas_used: int = 0

    @property
    def success(self) -> bool:
        """Whether the inner stage committed (the forwarded call ran to a final outcome)."""
        return self.status in (RelayCallStatus.OK, RelayCallStatus.RELAYED_CALL_FAILED)


@dataclass
class CallContext:
    """
    Explicit caller identity for a contract call.

    ``original_sender`` is set by the Forwarder to the request signer, so a
    recipient can tell who authorized the call even though it arrives from
    the Forwarder.
    """

    sender: str
    value: int = 0
    original_sender: Optional[str] = None


@dataclass(frozen=True)
class CallResult:
    """Outcome of a bounded host sub-call."""

    success: bool
    value: Any = None
    error: Optional[Exception] = field(default=None)

    @property
    def revert_data(self) -> bytes:
        """Revert payload of a failed call."""
        data = getattr(self.error, "data", None)
        return data if data is not None else b""
