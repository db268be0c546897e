"""
Shared fixtures: deterministic accounts and a fully deployed relay network.
"""

from dataclasses import dataclass
from typing import Optional

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from gsn_relay.config import ETHER, RelayHubConfig
from gsn_relay.eip712 import RELAY_REQUEST_NAME, RELAY_REQUEST_SUFFIX, sign_relay_request
from gsn_relay.forwarder import Forwarder
from gsn_relay.host import Host
from gsn_relay.models import ForwardRequest, GasAndDataLimits, RelayCallResult, RelayData, RelayRequest
from gsn_relay.paymaster import AcceptEverythingPaymaster, BasePaymaster
from gsn_relay.penalizer import Penalizer
from gsn_relay.recipient import encode_function_call
from gsn_relay.relay_hub import RelayHub
from gsn_relay.stake_manager import StakeManager

from sample_contracts import SampleRecipient

CHAIN_ID = 1337
GAS_PRICE = 1_000_000_000
EXTERNAL_GAS_LIMIT = 2_000_000
UNSTAKE_DELAY = 10
MANAGER_STAKE = ETHER


def make_account(label: str) -> LocalAccount:
    return Account.from_key(Web3.keccak(text=f"gsn-relay-test:{label}"))


@dataclass
class Accounts:
    owner: LocalAccount
    manager: LocalAccount
    worker: LocalAccount
    sponsor: LocalAccount
    user: LocalAccount
    beneficiary: LocalAccount
    other: LocalAccount


@dataclass
class Network:
    """Deployed protocol plus helpers to build, sign and relay requests."""

    host: Host
    accounts: Accounts
    penalizer: Penalizer
    stake_manager: StakeManager
    hub: RelayHub
    forwarder: Forwarder
    paymaster: BasePaymaster
    recipient: SampleRecipient

    def stake(self, manager: LocalAccount, amount: int = MANAGER_STAKE, unstake_delay: int = UNSTAKE_DELAY) -> None:
        """Give ``manager`` an owner, a stake and authorization for the hub."""
        owner = self.accounts.owner.address
        with self.host.transaction(manager.address):
            self.stake_manager.set_relay_manager_owner(manager.address, owner)
        with self.host.transaction(owner):
            self.stake_manager.stake_for_relay_manager(owner, manager.address, unstake_delay, amount)
            self.stake_manager.authorize_hub_by_owner(owner, manager.address, self.hub.address)

    def deploy_paymaster(
        self,
        cls: type = AcceptEverythingPaymaster,
        limits: Optional[GasAndDataLimits] = None,
        deposit: int = ETHER,
    ) -> BasePaymaster:
        paymaster = cls(
            self.host,
            self.accounts.owner.address,
            self.hub.address,
            self.forwarder.address,
            limits,
        )
        if deposit:
            with self.host.transaction(self.accounts.sponsor.address):
                paymaster.deposit(self.accounts.sponsor.address, deposit)
        return paymaster

    def build_request(
        self,
        data: bytes = encode_function_call("increment()"),
        gas: int = 100_000,
        paymaster: Optional[BasePaymaster] = None,
        signer: Optional[LocalAccount] = None,
        nonce: Optional[int] = None,
        valid_until: int = 0,
        gas_price: int = GAS_PRICE,
        relay_worker: Optional[str] = None,
        base_relay_fee: int = 0,
        pct_relay_fee: int = 10,
        to: Optional[str] = None,
        value: int = 0,
    ) -> RelayRequest:
        signer = signer or self.accounts.user
        return RelayRequest(
            request=ForwardRequest(
                from_address=signer.address,
                to=to or self.recipient.address,
                value=value,
                gas=gas,
                nonce=self.forwarder.get_nonce(signer.address) if nonce is None else nonce,
                data=data,
                valid_until=valid_until,
            ),
            relay_data=RelayData(
                gas_price=gas_price,
                pct_relay_fee=pct_relay_fee,
                base_relay_fee=base_relay_fee,
                relay_worker=relay_worker or self.accounts.worker.address,
                paymaster=(paymaster or self.paymaster).address,
                forwarder=self.forwarder.address,
            ),
        )

    def sign(self, relay_request: RelayRequest, signer: Optional[LocalAccount] = None) -> bytes:
        signer = signer or self.accounts.user
        return sign_relay_request(relay_request, signer.key.hex(), CHAIN_ID, self.forwarder.address)

    def relay(
        self,
        relay_request: RelayRequest,
        signature: Optional[bytes] = None,
        worker: Optional[str] = None,
        external_gas_limit: int = EXTERNAL_GAS_LIMIT,
        tx_gas_price: int = GAS_PRICE,
        max_acceptance_budget: int = 1_000_000,
        approval_data: bytes = b"",
    ) -> RelayCallResult:
        """Submit ``relay_request`` as its own transaction sent by the worker."""
        worker = worker or self.accounts.worker.address
        if signature is None:
            signature = self.sign(relay_request)
        with self.host.transaction(worker, gas_limit=external_gas_limit, gas_price=tx_gas_price):
            return self.hub.relay_call(
                worker,
                max_acceptance_budget,
                relay_request,
                signature,
                approval_data,
                external_gas_limit,
            )


@pytest.fixture
def accounts() -> Accounts:
    return Accounts(
        owner=make_account("owner"),
        manager=make_account("manager"),
        worker=make_account("worker"),
        sponsor=make_account("sponsor"),
        user=make_account("user"),
        beneficiary=make_account("beneficiary"),
        other=make_account("other"),
    )


@pytest.fixture
def host(accounts: Accounts) -> Host:
    host = Host(chain_id=CHAIN_ID)
    for account in (accounts.owner, accounts.manager, accounts.sponsor, accounts.user, accounts.other):
        host.fund(account.address, 100 * ETHER)
    return host


@pytest.fixture
def hub_config() -> RelayHubConfig:
    return RelayHubConfig()


@pytest.fixture
def forwarder(host: Host, accounts: Accounts) -> Forwarder:
    """Forwarder with the default relayed-transaction domain and RelayRequest type registered."""
    forwarder = Forwarder(host)
    owner = accounts.owner.address
    with host.transaction(owner):
        forwarder.register_domain_separator(owner, "GSN Relayed Transaction", "2")
        forwarder.register_request_type(owner, RELAY_REQUEST_NAME, RELAY_REQUEST_SUFFIX)
    return forwarder


@pytest.fixture
def recipient(host: Host, forwarder: Forwarder) -> SampleRecipient:
    return SampleRecipient(host, forwarder.address)


@pytest.fixture
def bare_network(
    host: Host,
    accounts: Accounts,
    hub_config: RelayHubConfig,
    forwarder: Forwarder,
    recipient: SampleRecipient,
) -> Network:
    """Deployed contracts and a funded paymaster; no relay manager yet."""
    penalizer = Penalizer(host, accounts.owner.address)
    stake_manager = StakeManager(host, penalizer.address)
    hub = RelayHub(host, accounts.owner.address, stake_manager.address, penalizer.address, hub_config)
    network = Network(
        host=host,
        accounts=accounts,
        penalizer=penalizer,
        stake_manager=stake_manager,
        hub=hub,
        forwarder=forwarder,
        paymaster=None,
        recipient=recipient,
    )
    network.paymaster = network.deploy_paymaster()
    return network


@pytest.fixture
def network(bare_network: Network) -> Network:
    """Network with a staked relay manager, one worker and a registered relay server."""
    accounts = bare_network.accounts
    bare_network.stake(accounts.manager)
    with bare_network.host.transaction(accounts.manager.address):
        bare_network.hub.add_relay_workers(accounts.manager.address, [accounts.worker.address])
        bare_network.hub.register_relay_server(accounts.manager.address, 0, 10, "http://relay.test")
    bare_network.host.mine()
    return bare_network
