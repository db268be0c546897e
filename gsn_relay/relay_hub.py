"""
RelayHub - relay call lifecycle, worker registry and sponsor ledger.

``relay_call`` runs in two stages. The outer stage checks the caller and the
paymaster's budget, then runs the inner stage as a bounded sub-call. The
inner stage calls the paymaster's pre hook, the forwarder and the post hook,
and aborts with a ``RelayCallStatusRevert`` when one of them fails, which
rolls back everything the inner stage did. The outer stage then decodes the
status and either records a free rejection or charges the paymaster for the
gas the whole call used.
"""

from typing import Optional

import structlog
from web3 import Web3

from .config import RelayHubConfig
from .eip712 import (
    DEFAULT_DOMAIN_NAME,
    DEFAULT_DOMAIN_VERSION,
    RELAY_REQUEST_TYPEHASH,
    domain_separator,
    relay_request_suffix,
)
from .errors import (
    BudgetError,
    GuardError,
    PaymasterBalanceChangedError,
    RelayCallStatusRevert,
    RelayHubError,
)
from .forwarder import Forwarder
from .host import Contract, Host
from .models import (
    MAX_UINT256,
    ZERO_ADDRESS,
    ForwardResult,
    GasAndDataLimits,
    RelayCallResult,
    RelayCallStatus,
    RelayData,
    RelayRequest,
)
from .paymaster import BasePaymaster
from .recipient import encode_function_call, function_selector
from .stake_manager import StakeManager

logger = structlog.get_logger()

RELAY_CALL_SIGNATURE = (
    "relayCall(uint256,"
    "((address,address,uint256,uint256,uint256,bytes,uint256),"
    "(uint256,uint256,uint256,address,address,address,bytes,uint256)),"
    "bytes,bytes,uint256)"
)
RELAY_CALL_SELECTOR = function_selector(RELAY_CALL_SIGNATURE)

# Outcomes the paymaster is not charged for while the inner stage stayed
# within its acceptance budget
_BUDGETED_REJECTIONS = (
    RelayCallStatus.REJECTED_BY_FORWARDER,
    RelayCallStatus.REJECTED_BY_RECIPIENT_REVERT,
)


def encode_relay_call(
    max_acceptance_budget: int,
    relay_request: RelayRequest,
    signature: bytes,
    approval_data: bytes,
    external_gas_limit: int,
) -> bytes:
    """ABI calldata of ``relayCall``; its length prices the transaction's calldata."""
    request = relay_request.request
    relay_data = relay_request.relay_data
    return encode_function_call(
        RELAY_CALL_SIGNATURE,
        max_acceptance_budget,
        (
            (
                request.from_address,
                request.to,
                request.value,
                request.gas,
                request.nonce,
                request.data,
                request.valid_until,
            ),
            (
                relay_data.gas_price,
                relay_data.pct_relay_fee,
                relay_data.base_relay_fee,
                relay_data.relay_worker,
                relay_data.paymaster,
                relay_data.forwarder,
                relay_data.paymaster_data,
                relay_data.client_id,
            ),
        ),
        signature,
        approval_data,
        external_gas_limit,
    )


class RelayHub(Contract):
    """
    Entry point for relay workers.

    Args:
        owner: Governance account allowed to reconfigure and deprecate the hub
        stake_manager: Address of the StakeManager holding manager stakes
        penalizer: Address of the Penalizer allowed to slash managers
        config: Initial hub configuration
        domain_name: EIP-712 domain name relayed requests are signed under
        domain_version: EIP-712 domain version
    """

    def __init__(
        self,
        host: Host,
        owner: str,
        stake_manager: str,
        penalizer: str,
        config: Optional[RelayHubConfig] = None,
        domain_name: str = DEFAULT_DOMAIN_NAME,
        domain_version: str = DEFAULT_DOMAIN_VERSION,
        address: Optional[str] = None,
    ):
        super().__init__(host, address)
        self.owner = owner
        self.stake_manager = stake_manager
        self.penalizer = penalizer
        self.config = config or RelayHubConfig()
        self.config_version = 1
        self.domain_name = domain_name
        self.domain_version = domain_version
        self.deprecation_block = MAX_UINT256

        self.workers: dict[str, str] = {}  # worker -> manager
        self.worker_counts: dict[str, int] = {}
        self.balances: dict[str, int] = {}

        logger.info(
            "relay_hub_deployed",
            relay_hub=self.address,
            stake_manager=stake_manager,
            penalizer=penalizer,
        )

    def _account(self, address: str) -> str:
        try:
            return Web3.to_checksum_address(address)
        except ValueError:
            raise RelayHubError(f"invalid address: {address}") from None

    def _stake_manager(self) -> StakeManager:
        stake_manager = self.host.contract(self.stake_manager, StakeManager)
        if stake_manager is None:
            raise RelayHubError("stake manager is not deployed")
        return stake_manager

    # Governance

    def _require_owner(self, sender: str) -> None:
        if sender != self.owner:
            raise RelayHubError("caller is not the owner")

    def get_configuration(self) -> RelayHubConfig:
        return self.config

    def set_configuration(self, sender: str, config: RelayHubConfig) -> int:
        """Replace the configuration; returns the new configuration version."""
        self._require_owner(sender)
        self.config = config
        self.config_version += 1

        self.emit("RelayHubConfigured", config=config.model_dump(), version=self.config_version)
        logger.info("relay_hub_configured", relay_hub=self.address, version=self.config_version)
        return self.config_version

    def deprecate_hub(self, sender: str, from_block: int) -> None:
        """Stop accepting relay calls from ``from_block`` on; final once reached."""
        self._require_owner(sender)
        if self.is_deprecated():
            raise RelayHubError("Already deprecated")
        self.deprecation_block = from_block

        self.emit("HubDeprecated", from_block=from_block)
        logger.warning("relay_hub_deprecated", relay_hub=self.address, from_block=from_block)

    def is_deprecated(self) -> bool:
        return self.host.block_number >= self.deprecation_block

    # Relay managers and workers

    def is_relay_manager_staked(self, relay_manager: str) -> bool:
        return self._stake_manager().is_relay_manager_staked(
            self._account(relay_manager),
            self.address,
            self.config.minimum_stake,
            self.config.minimum_unstake_delay,
        )

    def worker_to_manager(self, relay_worker: str) -> str:
        return self.workers.get(self._account(relay_worker), ZERO_ADDRESS)

    def worker_count(self, relay_manager: str) -> int:
        return self.worker_counts.get(self._account(relay_manager), 0)

    def add_relay_workers(self, sender: str, relay_workers: list[str]) -> int:
        """
        Bind workers to the calling relay manager.

        A worker belongs to exactly one manager for good; adding an already
        bound worker fails even for its own manager.

        Returns:
            The manager's new worker count
        """
        relay_manager = self._account(sender)
        relay_workers = [self._account(worker) for worker in relay_workers]
        if not self.is_relay_manager_staked(relay_manager):
            raise RelayHubError("relay manager not staked")

        count = self.worker_count(relay_manager) + len(relay_workers)
        if count > self.config.max_worker_count:
            raise RelayHubError("too many workers")
        if len(set(relay_workers)) != len(relay_workers):
            raise RelayHubError("duplicate worker")
        for worker in relay_workers:
            if worker in self.workers:
                raise RelayHubError("this worker has a manager")

        for worker in relay_workers:
            self.workers[worker] = relay_manager
        self.worker_counts[relay_manager] = count

        self.emit(
            "RelayWorkersAdded",
            relay_manager=relay_manager,
            new_relay_workers=tuple(relay_workers),
            workers_count=count,
        )
        logger.info("relay_workers_added", relay_manager=relay_manager, workers=len(relay_workers), total=count)
        return count

    def register_relay_server(
        self, sender: str, base_relay_fee: int, pct_relay_fee: int, url: str
    ) -> None:
        """Announce a relay server; nothing on the hub routes by it."""
        relay_manager = self._account(sender)
        if not self.is_relay_manager_staked(relay_manager):
            raise RelayHubError("relay manager not staked")
        if self.worker_count(relay_manager) == 0:
            raise RelayHubError("no relay workers")

        self.emit(
            "RelayServerRegistered",
            relay_manager=relay_manager,
            base_relay_fee=base_relay_fee,
            pct_relay_fee=pct_relay_fee,
            relay_url=url,
        )
        logger.info(
            "relay_server_registered",
            relay_manager=relay_manager,
            base_relay_fee=base_relay_fee,
            pct_relay_fee=pct_relay_fee,
            url=url,
        )

    # Ledger

    def balance_of(self, account: str) -> int:
        return self.balances.get(self._account(account), 0)

    def deposit_for(self, sender: str, target: str, amount: int) -> None:
        """Move ``amount`` of ``sender``'s native coin into ``target``'s hub balance."""
        target = self._account(target)
        if amount < 0:
            raise RelayHubError("negative amount")
        if amount > self.config.maximum_recipient_deposit:
            raise RelayHubError("deposit too big")
        self.host.transfer(sender, self.address, amount)
        self.balances[target] = self.balance_of(target) + amount

        self.emit("Deposited", paymaster=target, from_address=sender, amount=amount)
        logger.info("deposited", target=target, sender=sender, amount=amount, balance=self.balances[target])

    def withdraw(self, sender: str, amount: int, dest: str) -> None:
        """Pay ``amount`` of ``sender``'s hub balance out to ``dest``."""
        account = self._account(sender)
        if amount < 0:
            raise RelayHubError("negative amount")
        if self.balance_of(account) < amount:
            raise RelayHubError("insufficient funds")
        self.balances[account] = self.balance_of(account) - amount
        self.host.transfer(self.address, dest, amount)

        self.emit("Withdrawn", account=account, dest=dest, amount=amount)
        logger.info("withdrawn", account=account, dest=dest, amount=amount)

    def calculate_charge(self, gas_used: int, relay_data: RelayData) -> int:
        return (
            relay_data.base_relay_fee
            + gas_used * relay_data.gas_price * (relay_data.pct_relay_fee + 100) // 100
        )

    # Relay call

    def relay_call(
        self,
        sender: str,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        external_gas_limit: int,
    ) -> RelayCallResult:
        """
        Relay a signed request on behalf of a worker.

        Must run inside a host transaction sent by the worker itself, whose
        gas limit is ``external_gas_limit``.

        Returns:
            RelayCallResult. A paymaster rejection is a normal result with
            ``paymaster_accepted=False`` and no charge.

        Raises:
            GuardError: the caller may not relay this request
            BudgetError: the paymaster's limits or balance do not cover it
            PaymasterBalanceChangedError: the paymaster's hub balance
                dropped during the call; nothing is charged or kept
            RelayHubError: the inner stage failed without a status
        """
        with self.host.savepoint():
            return self._relay_call(
                sender,
                max_acceptance_budget,
                relay_request,
                signature,
                approval_data,
                external_gas_limit,
            )

    def _relay_call(
        self,
        sender: str,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        external_gas_limit: int,
    ) -> RelayCallResult:
        metering = self.host.metering
        request = relay_request.request
        relay_data = relay_request.relay_data

        gas_left_at_entry = self.host.gas_left()
        self.host.use_gas(metering.relay_call_gas)

        relay_manager = self._check_guards(
            sender, relay_request, external_gas_limit, gas_left_at_entry
        )
        limits, data_gas_cost, max_possible_gas = self._verify_gas_and_data_limits(
            max_acceptance_budget, relay_request, signature, approval_data, external_gas_limit
        )

        gas_before_inner = self.host.gas_left()
        inner_gas_limit = metering.forwardable(gas_before_inner) - self.config.gas_reserve
        used_before_inner = external_gas_limit - gas_before_inner

        logger.debug(
            "inner_relay_call_starting",
            worker=sender,
            inner_gas_limit=inner_gas_limit,
            used_before_inner=used_before_inner,
            max_possible_gas=max_possible_gas,
        )

        inner = self.host.call(
            inner_gas_limit,
            self._inner_relay_call,
            relay_request,
            signature,
            approval_data,
            limits,
            used_before_inner,
            max_possible_gas,
        )
        inner_gas_used = gas_before_inner - self.host.gas_left()

        if inner.success:
            status, return_value = inner.value
        elif isinstance(inner.error, RelayCallStatusRevert):
            status, return_value = inner.error.status, inner.error.return_data
        else:
            raise RelayHubError(f"inner relay call failed: {inner.error}")

        if return_value:
            self.emit("TransactionResult", status=status, return_value=return_value)

        if status == RelayCallStatus.PAYMASTER_BALANCE_CHANGED:
            logger.error("paymaster_balance_changed", paymaster=relay_data.paymaster, worker=sender)
            raise PaymasterBalanceChangedError(relay_data.paymaster)

        selector = bytes(request.data[:4])
        if status == RelayCallStatus.REJECTED_BY_PRE_RELAYED or (
            status in _BUDGETED_REJECTIONS
            and inner_gas_used <= limits.acceptance_budget + data_gas_cost
        ):
            self.emit(
                "TransactionRejectedByPaymaster",
                relay_manager=relay_manager,
                paymaster=relay_data.paymaster,
                from_address=request.from_address,
                to=request.to,
                relay_worker=sender,
                selector=selector,
                inner_gas_used=inner_gas_used,
                reason=return_value,
            )
            logger.warning(
                "relay_call_rejected",
                status=status.name,
                paymaster=relay_data.paymaster,
                from_address=request.from_address,
                inner_gas_used=inner_gas_used,
            )
            return RelayCallResult(
                paymaster_accepted=False,
                status=status,
                return_value=return_value,
                charge=0,
                gas_used=inner_gas_used,
            )

        self.host.use_gas(metering.charge_accounting_gas)
        gas_used = external_gas_limit - self.host.gas_left() + self.config.gas_overhead
        charge = self.calculate_charge(gas_used, relay_data)

        paymaster = self._account(relay_data.paymaster)
        if self.balance_of(paymaster) < charge:
            raise RelayHubError("paymaster balance too low to pay charge")
        self.balances[paymaster] = self.balance_of(paymaster) - charge
        self.balances[relay_manager] = self.balance_of(relay_manager) + charge

        self.emit(
            "TransactionRelayed",
            relay_manager=relay_manager,
            relay_worker=sender,
            from_address=request.from_address,
            to=request.to,
            paymaster=relay_data.paymaster,
            selector=selector,
            status=status,
            charge=charge,
        )
        logger.info(
            "relay_call_accepted",
            status=status.name,
            relay_manager=relay_manager,
            paymaster=relay_data.paymaster,
            from_address=request.from_address,
            gas_used=gas_used,
            charge=charge,
        )
        return RelayCallResult(
            paymaster_accepted=True,
            status=status,
            return_value=return_value,
            charge=charge,
            gas_used=gas_used,
        )

    def _check_guards(
        self,
        sender: str,
        relay_request: RelayRequest,
        external_gas_limit: int,
        gas_left_at_entry: int,
    ) -> str:
        """Check the caller context; returns the worker's relay manager."""
        relay_data = relay_request.relay_data
        tx = self.host.tx

        try:
            if self.is_deprecated():
                raise GuardError("hub deprecated")
            worker = self._account(sender)
            if tx is None or worker != self._account(tx.origin):
                raise GuardError("relay worker must be EOA")
            relay_manager = self.worker_to_manager(worker)
            if relay_manager == ZERO_ADDRESS:
                raise GuardError("Unknown relay worker")
            if self._account(relay_data.relay_worker) != worker:
                raise GuardError("Not a right worker")
            if not self.is_relay_manager_staked(relay_manager):
                raise GuardError("relay manager not staked")
            if relay_data.gas_price > tx.gas_price:
                raise GuardError("Invalid gas price")
            if external_gas_limit > self.host.block_gas_limit:
                raise GuardError("Impossible gas limit")
            if external_gas_limit < gas_left_at_entry:
                raise GuardError("external gas limit below gas left")
        except GuardError as e:
            logger.warning("relay_call_guard_failed", worker=sender, reason=e.reason)
            raise

        return relay_manager

    def _verify_gas_and_data_limits(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        external_gas_limit: int,
    ) -> tuple[GasAndDataLimits, int, int]:
        """
        Check the paymaster's declared limits against this request.

        Returns:
            ``(limits, data_gas_cost, max_possible_gas)``
        """
        relay_data = relay_request.relay_data
        paymaster = self.host.contract(relay_data.paymaster, BasePaymaster)
        if paymaster is None:
            raise BudgetError("paymaster is not a contract")

        limits_call = self.host.call(
            self.host.metering.paymaster_limits_gas, paymaster.get_gas_and_data_limits
        )
        if not limits_call.success:
            raise BudgetError("getGasAndDataLimits failed")
        limits: GasAndDataLimits = limits_call.value

        calldata_size = len(
            encode_relay_call(
                max_acceptance_budget, relay_request, signature, approval_data, external_gas_limit
            )
        )
        if calldata_size > limits.calldata_size_limit:
            raise BudgetError("msg.data exceeded limit")
        if limits.acceptance_budget > max_acceptance_budget:
            raise BudgetError("acceptance budget too high")
        if limits.acceptance_budget < limits.pre_relayed_call_gas_limit:
            raise BudgetError("acceptance budget too low")

        data_gas_cost = calldata_size * self.config.data_gas_cost_per_byte
        max_possible_gas = (
            self.config.gas_overhead
            + limits.pre_relayed_call_gas_limit
            + limits.post_relayed_call_gas_limit
            + relay_request.request.gas
            + self.config.external_call_data_cost_overhead
            + data_gas_cost
        )
        if external_gas_limit < max_possible_gas:
            raise BudgetError("no gas for innerRelayCall")

        max_charge = self.calculate_charge(max_possible_gas, relay_data)
        if self.balance_of(relay_data.paymaster) < max_charge:
            raise BudgetError("Paymaster balance too low")

        logger.debug(
            "gas_and_data_limits_verified",
            paymaster=relay_data.paymaster,
            calldata_size=calldata_size,
            max_possible_gas=max_possible_gas,
            max_charge=max_charge,
        )
        return limits, data_gas_cost, max_possible_gas

    def _inner_relay_call(
        self,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        limits: GasAndDataLimits,
        used_before_inner: int,
        max_possible_gas: int,
    ) -> tuple[RelayCallStatus, bytes]:
        metering = self.host.metering
        relay_data = relay_request.relay_data
        self.host.use_gas(metering.inner_relay_call_gas)

        paymaster = self.host.contract(relay_data.paymaster, BasePaymaster)
        balance_before = self.balance_of(relay_data.paymaster)

        pre = self.host.call(
            limits.pre_relayed_call_gas_limit,
            paymaster.pre_relayed_call,
            self.address,
            relay_request,
            signature,
            approval_data,
            max_possible_gas,
        )
        if not pre.success:
            raise RelayCallStatusRevert(RelayCallStatus.REJECTED_BY_PRE_RELAYED, pre.revert_data)
        context, reject_on_recipient_revert = pre.value

        forward_result = self._forward(relay_request, signature)
        if not forward_result.forwarder_success:
            raise RelayCallStatusRevert(
                RelayCallStatus.REJECTED_BY_FORWARDER, forward_result.return_data
            )
        if reject_on_recipient_revert and not forward_result.call_success:
            raise RelayCallStatusRevert(
                RelayCallStatus.REJECTED_BY_RECIPIENT_REVERT, forward_result.return_data
            )

        gas_use_without_post = (
            used_before_inner
            + self.host.tx.meter.frame_used
            + self.config.gas_overhead
            + self.config.post_overhead
        )
        post = self.host.call(
            limits.post_relayed_call_gas_limit,
            paymaster.post_relayed_call,
            self.address,
            context,
            forward_result.call_success,
            gas_use_without_post,
            relay_data,
        )
        if not post.success:
            raise RelayCallStatusRevert(RelayCallStatus.POST_RELAYED_FAILED, post.revert_data)

        if self.balance_of(relay_data.paymaster) < balance_before:
            raise RelayCallStatusRevert(RelayCallStatus.PAYMASTER_BALANCE_CHANGED)

        status = (
            RelayCallStatus.OK if forward_result.call_success else RelayCallStatus.RELAYED_CALL_FAILED
        )
        return status, forward_result.return_data

    def _forward(self, relay_request: RelayRequest, signature: bytes) -> ForwardResult:
        """Execute the request through its forwarder under the relayed-transaction domain."""
        relay_data = relay_request.relay_data
        forwarder = self.host.contract(relay_data.forwarder, Forwarder)
        if forwarder is None:
            return ForwardResult(
                forwarder_success=False, call_success=False, return_data=b"forwarder is not a contract"
            )

        separator = domain_separator(
            self.domain_name, self.domain_version, self.host.chain_id, forwarder.address
        )
        call = self.host.call(
            self.host.metering.forwardable(self.host.gas_left()),
            forwarder.execute,
            self.address,
            relay_request.request,
            separator,
            RELAY_REQUEST_TYPEHASH,
            relay_request_suffix(relay_data),
            signature,
        )
        if not call.success:
            return ForwardResult(forwarder_success=False, call_success=False, return_data=call.revert_data)
        return call.value
