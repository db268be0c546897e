"""
Paymaster (sponsor) interface invoked by the RelayHub.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from .errors import PaymasterError
from .host import Contract, Host
from .models import GasAndDataLimits, RelayData, RelayRequest

logger = structlog.get_logger()

DEFAULT_GAS_AND_DATA_LIMITS = GasAndDataLimits(
    acceptance_budget=150_000,
    pre_relayed_call_gas_limit=100_000,
    post_relayed_call_gas_limit=110_000,
    calldata_size_limit=10_500,
)


class BasePaymaster(Contract, ABC):
    """
    Sponsor bound to one relay hub and one trusted forwarder.

    Subclasses implement ``_pre_relayed_call`` (accept or raise to reject)
    and ``_post_relayed_call``. The checks run before ``_pre_relayed_call``
    can be relaxed by overriding the ``_verify_*`` methods.
    """

    def __init__(
        self,
        host: Host,
        owner: str,
        relay_hub: str,
        trusted_forwarder: str,
        limits: Optional[GasAndDataLimits] = None,
        address: Optional[str] = None,
    ):
        super().__init__(host, address)
        self.owner = owner
        self.relay_hub = relay_hub
        self.trusted_forwarder = trusted_forwarder
        self.limits = limits or DEFAULT_GAS_AND_DATA_LIMITS

    def get_gas_and_data_limits(self) -> GasAndDataLimits:
        return self.limits

    def _require_relay_hub(self, sender: str) -> None:
        if sender != self.relay_hub:
            raise PaymasterError("can only be called by RelayHub")

    def _verify_forwarder(self, relay_request: RelayRequest) -> None:
        if relay_request.relay_data.forwarder != self.trusted_forwarder:
            raise PaymasterError("Forwarder is not trusted")

    def _verify_value(self, relay_request: RelayRequest) -> None:
        if relay_request.request.value != 0:
            raise PaymasterError("value transfer not supported")

    def _verify_paymaster_data(self, relay_request: RelayRequest) -> None:
        if relay_request.relay_data.paymaster_data:
            raise PaymasterError("should have no paymasterData")

    def _verify_approval_data(self, approval_data: bytes) -> None:
        if approval_data:
            raise PaymasterError("should have no approvalData")

    def pre_relayed_call(
        self,
        sender: str,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        max_possible_gas: int,
    ) -> tuple[Any, bool]:
        """
        Decide whether to sponsor a request.

        Returns:
            ``(context, reject_on_recipient_revert)``; ``context`` is handed
            back to ``post_relayed_call``.

        Raises:
            PaymasterError: the request is rejected
        """
        self._require_relay_hub(sender)
        self._verify_forwarder(relay_request)
        self._verify_value(relay_request)
        self._verify_paymaster_data(relay_request)
        self._verify_approval_data(approval_data)
        return self._pre_relayed_call(relay_request, signature, approval_data, max_possible_gas)

    def post_relayed_call(
        self,
        sender: str,
        context: Any,
        success: bool,
        gas_use_without_post: int,
        relay_data: RelayData,
    ) -> None:
        self._require_relay_hub(sender)
        self._post_relayed_call(context, success, gas_use_without_post, relay_data)

    @abstractmethod
    def _pre_relayed_call(
        self,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        max_possible_gas: int,
    ) -> tuple[Any, bool]:
        ...

    @abstractmethod
    def _post_relayed_call(
        self, context: Any, success: bool, gas_use_without_post: int, relay_data: RelayData
    ) -> None:
        ...

    # Hub deposit

    def _hub(self) -> Contract:
        hub = self.host.contract(self.relay_hub)
        if hub is None:
            raise PaymasterError("relay hub is not a contract")
        return hub

    def deposit(self, sender: str, amount: int) -> None:
        """Fund this paymaster's balance on the relay hub from ``sender``."""
        self._hub().deposit_for(sender, self.address, amount)

    def withdraw_relay_hub_deposit_to(self, sender: str, amount: int, target: str) -> None:
        if sender != self.owner:
            raise PaymasterError("caller is not the owner")
        self._hub().withdraw(self.address, amount, target)
        logger.info("paymaster_deposit_withdrawn", paymaster=self.address, amount=amount, target=target)


class AcceptEverythingPaymaster(BasePaymaster):
    """Sponsors every request that passes the base checks."""

    def _pre_relayed_call(
        self,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        max_possible_gas: int,
    ) -> tuple[Any, bool]:
        return b"", False

    def _post_relayed_call(
        self, context: Any, success: bool, gas_use_without_post: int, relay_data: RelayData
    ) -> None:
        pass
