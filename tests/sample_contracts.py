"""
Recipients and paymasters used by the tests.
"""

from typing import Any

from gsn_relay.errors import PaymasterError, RecipientError
from gsn_relay.host import Host
from gsn_relay.models import CallContext, RelayData, RelayRequest
from gsn_relay.paymaster import AcceptEverythingPaymaster
from gsn_relay.recipient import BaseRelayRecipient, external


class SampleRecipient(BaseRelayRecipient):
    """Target contract with one method per forwarded-call outcome."""

    def __init__(self, host: Host, trusted_forwarder: str):
        super().__init__(host, trusted_forwarder)
        self.counts: dict[str, int] = {}
        self.received = 0

    @external("increment()", returns=("uint256",))
    def increment(self, ctx: CallContext) -> int:
        sender = self._msg_sender(ctx)
        self.counts[sender] = self.counts.get(sender, 0) + 1
        self.emit("Incremented", sender=sender, count=self.counts[sender])
        return self.counts[sender]

    @external("whoami()", returns=("address",))
    def whoami(self, ctx: CallContext) -> str:
        return self._msg_sender(ctx)

    @external("fail()")
    def fail(self, ctx: CallContext) -> None:
        self.counts["failed"] = 1
        raise RecipientError("always fails")

    @external("burn(uint256)")
    def burn(self, ctx: CallContext, amount: int) -> None:
        self.host.use_gas(amount)

    @external("burnAndFail(uint256)")
    def burn_and_fail(self, ctx: CallContext, amount: int) -> None:
        self.host.use_gas(amount)
        raise RecipientError("failed after burning gas")

    @external("pay()")
    def pay(self, ctx: CallContext) -> None:
        self.received += ctx.value


class RejectingPaymaster(AcceptEverythingPaymaster):
    def _pre_relayed_call(self, relay_request, signature, approval_data, max_possible_gas):
        raise PaymasterError("rejected by policy")


class RejectOnRevertPaymaster(AcceptEverythingPaymaster):
    def _pre_relayed_call(self, relay_request, signature, approval_data, max_possible_gas):
        return b"reject-on-revert", True


class BurningPaymaster(AcceptEverythingPaymaster):
    """Spends its whole pre hook gas limit, then accepts."""

    def _pre_relayed_call(self, relay_request, signature, approval_data, max_possible_gas):
        self.host.use_gas(self.limits.pre_relayed_call_gas_limit)
        return b"", False


class FailingPostPaymaster(AcceptEverythingPaymaster):
    def _post_relayed_call(self, context, success, gas_use_without_post, relay_data):
        raise PaymasterError("post hook failed")


class DrainingPaymaster(AcceptEverythingPaymaster):
    """Withdraws from its own hub balance in the post hook."""

    def _post_relayed_call(self, context, success, gas_use_without_post, relay_data):
        self._hub().withdraw(self.address, 1, self.owner)


class RecordingPaymaster(AcceptEverythingPaymaster):
    """Remembers what the hub passed to its hooks."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.pre_calls: list[int] = []
        self.post_calls: list[tuple[Any, bool, int]] = []

    def _pre_relayed_call(
        self, relay_request: RelayRequest, signature: bytes, approval_data: bytes, max_possible_gas: int
    ):
        self.pre_calls.append(max_possible_gas)
        return b"recorded", False

    def _post_relayed_call(
        self, context: Any, success: bool, gas_use_without_post: int, relay_data: RelayData
    ) -> None:
        self.post_calls.append((context, success, gas_use_without_post))
