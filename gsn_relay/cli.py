"""
CLI entry point for gsn-relay.
"""

import json
from typing import Optional

import structlog
import typer
from eth_account import Account
from web3 import Web3

from .config import ETHER, Settings, get_settings
from .db import EventDatabase
from .eip712 import (
    FORWARD_REQUEST_TYPE,
    FORWARD_REQUEST_TYPEHASH,
    RELAY_REQUEST_NAME,
    RELAY_REQUEST_SUFFIX,
    RELAY_REQUEST_TYPE,
    RELAY_REQUEST_TYPEHASH,
    domain_separator,
    sign_forward_request,
    sign_relay_request,
)
from .forwarder import Forwarder
from .host import Host
from .models import CallContext, ForwardRequest, RelayData, RelayRequest
from .paymaster import AcceptEverythingPaymaster
from .penalizer import Penalizer
from .recipient import BaseRelayRecipient, encode_function_call, external
from .relay_hub import RelayHub
from .stake_manager import StakeManager

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="gsn-relay",
    help="Meta-transaction relay protocol engine",
    add_completion=False,
)

DEMO_GAS_PRICE = 1_000_000_000
DEMO_EXTERNAL_GAS_LIMIT = 2_000_000


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


@app.command()
def version() -> None:
    """Show the gsn-relay version."""
    from gsn_relay import __version__

    typer.echo(f"gsn-relay v{__version__}")


@app.command("show-config")
def show_config() -> None:
    """Print the effective hub configuration and metering model as JSON."""
    settings = get_settings()
    typer.echo(
        json.dumps(
            {
                "chain_id": settings.chain_id,
                "block_gas_limit": settings.block_gas_limit,
                "domain_name": settings.domain_name,
                "domain_version": settings.domain_version,
                "relay_hub": settings.relay_hub.model_dump(),
                "metering": settings.metering.model_dump(),
            },
            indent=2,
        )
    )


@app.command("type-hash")
def type_hash_command() -> None:
    """Print the request type strings and their hashes."""
    for type_str, hash_ in (
        (FORWARD_REQUEST_TYPE, FORWARD_REQUEST_TYPEHASH),
        (RELAY_REQUEST_TYPE, RELAY_REQUEST_TYPEHASH),
    ):
        typer.echo(type_str)
        typer.echo(f"  0x{hash_.hex()}")


@app.command("domain-separator")
def domain_separator_command(
    forwarder: str = typer.Option(..., "--forwarder", help="Forwarder address (verifying contract)"),
    name: Optional[str] = typer.Option(None, "--name", help="Domain name"),
    domain_version: Optional[str] = typer.Option(None, "--version", help="Domain version"),
    chain_id: Optional[int] = typer.Option(None, "--chain-id", help="Chain id"),
) -> None:
    """Compute the domain separator a forwarder registers for a domain."""
    settings = get_settings()
    separator = domain_separator(
        name or settings.domain_name,
        domain_version or settings.domain_version,
        chain_id if chain_id is not None else settings.chain_id,
        Web3.to_checksum_address(forwarder),
    )
    typer.echo(f"0x{separator.hex()}")


@app.command("sign-request")
def sign_request(
    private_key: str = typer.Option(..., "--private-key", envvar="GSN_PRIVATE_KEY", help="Signer key"),
    forwarder: str = typer.Option(..., "--forwarder", help="Forwarder address"),
    to: str = typer.Option(..., "--to", help="Target contract"),
    data: str = typer.Option("0x", "--data", help="Hex call data"),
    nonce: int = typer.Option(0, "--nonce"),
    gas: int = typer.Option(100_000, "--gas"),
    value: int = typer.Option(0, "--value"),
    valid_until: int = typer.Option(0, "--valid-until", help="Last valid block, 0 = no expiry"),
    chain_id: Optional[int] = typer.Option(None, "--chain-id"),
    paymaster: Optional[str] = typer.Option(None, "--paymaster", help="Sign a RelayRequest for this paymaster"),
    worker: Optional[str] = typer.Option(None, "--worker", help="Relay worker of the RelayRequest"),
    gas_price: int = typer.Option(DEMO_GAS_PRICE, "--gas-price"),
    pct_relay_fee: int = typer.Option(10, "--pct-relay-fee"),
    base_relay_fee: int = typer.Option(0, "--base-relay-fee"),
) -> None:
    """
    Sign a ForwardRequest, or a RelayRequest when --paymaster and --worker are given.
    """
    settings = get_settings()
    chain = chain_id if chain_id is not None else settings.chain_id
    signer = Account.from_key(private_key)
    forwarder_address = Web3.to_checksum_address(forwarder)

    request = ForwardRequest(
        from_address=signer.address,
        to=Web3.to_checksum_address(to),
        value=value,
        gas=gas,
        nonce=nonce,
        data=_hex_bytes(data),
        valid_until=valid_until,
    )

    if paymaster or worker:
        if not (paymaster and worker):
            typer.echo("Error: --paymaster and --worker must be given together", err=True)
            raise typer.Exit(1)
        relay_request = RelayRequest(
            request=request,
            relay_data=RelayData(
                gas_price=gas_price,
                pct_relay_fee=pct_relay_fee,
                base_relay_fee=base_relay_fee,
                relay_worker=Web3.to_checksum_address(worker),
                paymaster=Web3.to_checksum_address(paymaster),
                forwarder=forwarder_address,
            ),
        )
        signature = sign_relay_request(
            relay_request,
            private_key,
            chain,
            forwarder_address,
            settings.domain_name,
            settings.domain_version,
        )
        typer.echo(f"RelayRequest signed by {signer.address}")
    else:
        signature = sign_forward_request(
            request,
            private_key,
            chain,
            forwarder_address,
            settings.domain_name,
            settings.domain_version,
        )
        typer.echo(f"ForwardRequest signed by {signer.address}")

    typer.echo(f"0x{signature.hex()}")


class DemoCounter(BaseRelayRecipient):
    """Counts calls per original sender."""

    def __init__(self, host: Host, trusted_forwarder: str):
        super().__init__(host, trusted_forwarder)
        self.counts: dict[str, int] = {}

    @external("increment()", returns=("uint256",))
    def increment(self, ctx: CallContext) -> int:
        sender = self._msg_sender(ctx)
        self.counts[sender] = self.counts.get(sender, 0) + 1
        self.emit("Incremented", sender=sender, count=self.counts[sender])
        return self.counts[sender]


def _demo_account(label: str):
    return Account.from_key(Web3.keccak(text=f"gsn-relay-demo:{label}"))


def run_demo(settings: Settings, database: Optional[EventDatabase] = None) -> dict:
    """
    Deploy the protocol on a fresh host and relay one call end to end.

    Returns a summary of the outcome and the resulting balances.
    """
    config = settings.relay_hub
    host = Host(
        chain_id=settings.chain_id,
        block_gas_limit=settings.block_gas_limit,
        metering=settings.metering,
    )
    if database:
        host.add_event_sink(database.record)

    owner, manager, worker, sponsor, user = (
        _demo_account(label) for label in ("owner", "manager", "worker", "sponsor", "user")
    )
    stake = max(config.minimum_stake, ETHER)
    host.fund(owner.address, stake + 10 * ETHER)
    host.fund(sponsor.address, 10 * ETHER)

    penalizer = Penalizer(host, owner.address)
    stake_manager = StakeManager(host, penalizer.address)
    hub = RelayHub(
        host,
        owner.address,
        stake_manager.address,
        penalizer.address,
        config,
        settings.domain_name,
        settings.domain_version,
    )
    forwarder = Forwarder(host)
    paymaster = AcceptEverythingPaymaster(host, owner.address, hub.address, forwarder.address)
    counter = DemoCounter(host, forwarder.address)

    with host.transaction(owner.address):
        forwarder.register_domain_separator(owner.address, settings.domain_name, settings.domain_version)
        forwarder.register_request_type(owner.address, RELAY_REQUEST_NAME, RELAY_REQUEST_SUFFIX)

    with host.transaction(manager.address):
        stake_manager.set_relay_manager_owner(manager.address, owner.address)

    with host.transaction(owner.address):
        stake_manager.stake_for_relay_manager(
            owner.address, manager.address, config.minimum_unstake_delay, stake
        )
        stake_manager.authorize_hub_by_owner(owner.address, manager.address, hub.address)

    with host.transaction(manager.address):
        hub.add_relay_workers(manager.address, [worker.address])
        hub.register_relay_server(manager.address, 0, 10, "http://localhost:8090")

    with host.transaction(sponsor.address):
        paymaster.deposit(sponsor.address, ETHER)

    host.mine()

    relay_request = RelayRequest(
        request=ForwardRequest(
            from_address=user.address,
            to=counter.address,
            value=0,
            gas=100_000,
            nonce=forwarder.get_nonce(user.address),
            data=encode_function_call("increment()"),
        ),
        relay_data=RelayData(
            gas_price=DEMO_GAS_PRICE,
            pct_relay_fee=10,
            base_relay_fee=0,
            relay_worker=worker.address,
            paymaster=paymaster.address,
            forwarder=forwarder.address,
        ),
    )
    signature = sign_relay_request(
        relay_request,
        user.key.hex(),
        settings.chain_id,
        forwarder.address,
        settings.domain_name,
        settings.domain_version,
    )

    paymaster_before = hub.balance_of(paymaster.address)
    with host.transaction(worker.address, gas_limit=DEMO_EXTERNAL_GAS_LIMIT, gas_price=DEMO_GAS_PRICE):
        result = hub.relay_call(
            worker.address,
            paymaster.get_gas_and_data_limits().acceptance_budget,
            relay_request,
            signature,
            b"",
            DEMO_EXTERNAL_GAS_LIMIT,
        )

    return {
        "status": result.status.name,
        "success": result.success,
        "charge": result.charge,
        "gas_used": result.gas_used,
        "counter": counter.counts.get(user.address, 0),
        "paymaster_balance_before": paymaster_before,
        "paymaster_balance_after": hub.balance_of(paymaster.address),
        "manager_balance": hub.balance_of(manager.address),
        "user_nonce": forwarder.get_nonce(user.address),
        "events": len(host.events),
    }


@app.command()
def demo(
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        help="Store committed events in this database (e.g. sqlite:///./gsn_relay.db)",
    ),
    persist: bool = typer.Option(False, "--persist", help="Store committed events in GSN_DATABASE_URL"),
) -> None:
    """
    Run a complete in-process relay: staking, worker registration, paymaster
    funding and one relayed call.
    """
    settings = get_settings()
    if persist and not database_url:
        database_url = settings.database_url
    database = EventDatabase(database_url) if database_url else None

    try:
        summary = run_demo(settings, database)
    finally:
        if database:
            database.close()

    typer.echo(f"Status: {summary['status']}")
    typer.echo(f"Charge: {summary['charge']} wei for {summary['gas_used']} gas")
    typer.echo(f"Counter: {summary['counter']}")
    typer.echo(
        f"Paymaster balance: {summary['paymaster_balance_before']} -> {summary['paymaster_balance_after']}"
    )
    typer.echo(f"Manager balance: {summary['manager_balance']}")
    typer.echo(f"Events: {summary['events']}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
