"""
Exception taxonomy for the relay protocol.

Every protocol-level failure is a ``Revert``: the host rolls back the state
changes of the enclosing call and, for bounded sub-calls, reports the failure
to the caller instead of propagating it. Anything that is not a ``Revert`` is
a programming error and unwinds the whole transaction.
"""

from typing import Optional


class Revert(Exception):
    """Execution aborted; the enclosing call's state changes are discarded."""

    def __init__(self, reason: str = "", data: Optional[bytes] = None):
        self.reason = reason
        self.data = data if data is not None else reason.encode("utf-8")
        super().__init__(reason or "0x" + self.data.hex())


class OutOfGas(Revert):
    """A metered frame tried to use more gas than it was allotted."""

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"out of gas: requested {requested}, available {available}")


class ForwarderError(Revert):
    """Signed request failed verification, or a type registration was malformed."""


class StakeManagerError(Revert):
    """A stake or hub-authorization rule was violated."""


class PenalizerError(Revert):
    """A penalization request was refused."""


class PaymasterError(Revert):
    """A paymaster hook refused the request."""


class RecipientError(Revert):
    """A forwarded-call target reverted."""


class RelayHubError(Revert):
    """Base class for RelayHub failures."""


class GuardError(RelayHubError):
    """Caller context is malformed: wrong worker, gas price, stake, or hub deprecated."""


class BudgetError(RelayHubError):
    """Paymaster limits are inconsistent with the request or its balance."""


class PaymasterBalanceChangedError(RelayHubError):
    """The paymaster's ledger balance moved during the call by other means than the charge."""

    def __init__(self, paymaster: str):
        self.paymaster = paymaster
        super().__init__(f"paymaster balance changed: {paymaster}")


class RelayCallStatusRevert(Revert):
    """
    Raised by the inner relay stage to carry a structured outcome.

    The outer stage catches it at the sub-call boundary and branches on
    ``status`` after the inner stage's effects have been rolled back.
    """

    def __init__(self, status, return_data: bytes = b""):
        self.status = status
        self.return_data = return_data
        super().__init__(f"relay call status {status.name}", data=return_data)
