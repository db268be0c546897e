"""
In-process execution host.

Provides the environment the protocol assumes: deterministic sequential
execution, a metered gas budget per transaction, bounded sub-calls whose
effects are rolled back when they revert, native coin balances, and an event
log. Contracts are plain Python objects registered with a host under an
address.
"""

import copy
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Callable, ContextManager, Iterator, Optional, TypeVar

import structlog
from eth_abi import encode
from web3 import Web3

from .config import MeteringModel
from .errors import OutOfGas, Revert
from .events import Event, EventLog, EventSink
from .models import CallContext, CallResult

logger = structlog.get_logger()

C = TypeVar("C", bound="Contract")


class GasMeter:
    """
    Gas accounting for one transaction.

    Frames form a stack of ``[allotted, remaining]`` pairs. A child frame is
    allotted at most what its parent has left; when it exits the parent is
    charged whatever the child used, including everything when the child ran
    out of gas.
    """

    def __init__(self, gas_limit: int):
        self.gas_limit = gas_limit
        self._frames: list[list[int]] = [[gas_limit, gas_limit]]

    @property
    def gas_left(self) -> int:
        return self._frames[-1][1]

    @property
    def frame_used(self) -> int:
        """Gas used so far by the current frame."""
        allotted, remaining = self._frames[-1]
        return allotted - remaining

    @property
    def total_used(self) -> int:
        """Gas used so far by the whole transaction."""
        return sum(allotted - remaining for allotted, remaining in self._frames)

    def consume(self, amount: int) -> None:
        frame = self._frames[-1]
        if amount > frame[1]:
            available = frame[1]
            frame[1] = 0
            raise OutOfGas(amount, available)
        frame[1] -= amount

    @contextmanager
    def frame(self, gas: int) -> Iterator[int]:
        allotted = max(0, min(gas, self.gas_left))
        self._frames.append([allotted, allotted])
        try:
            yield allotted
        finally:
            _, remaining = self._frames.pop()
            self._frames[-1][1] -= allotted - remaining


@dataclass
class TxContext:
    """Context of the transaction currently executing."""

    origin: str
    gas_price: int
    gas_limit: int
    meter: GasMeter


class Contract:
    """
    Base class for components living on a host.

    A contract's state is every instance attribute except host wiring; the
    host snapshots and restores it to roll back reverted calls.
    """

    _transient = frozenset({"host", "address"})

    def __init__(self, host: "Host", address: Optional[str] = None):
        self.host = host
        self.address = address or host.new_address()
        host.register(self)

    def emit(self, name: str, **args: Any) -> None:
        self.host.emit(self.address, name, args)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(
            {key: value for key, value in vars(self).items() if key not in self._transient}
        )

    def restore(self, state: dict[str, Any]) -> None:
        for key in [key for key in vars(self) if key not in self._transient]:
            delattr(self, key)
        vars(self).update(state)

    def handle_call(self, ctx: CallContext, data: bytes) -> bytes:
        """Entry point for forwarded calls; contracts that accept them override it."""
        raise Revert("function not supported")


class Host:
    """
    Execution host shared by all protocol components.

    Outside of ``transaction()`` execution is unmetered; inside it every
    ``use_gas`` is charged to the transaction's meter.
    """

    def __init__(
        self,
        chain_id: int = 1337,
        block_gas_limit: int = 30_000_000,
        metering: Optional[MeteringModel] = None,
        block_number: int = 1,
        timestamp: Optional[int] = None,
    ):
        self.chain_id = chain_id
        self.block_gas_limit = block_gas_limit
        self.metering = metering or MeteringModel()
        self.block_number = block_number
        self.timestamp = timestamp if timestamp is not None else int(time.time())

        self.events = EventLog()
        self._balances: dict[str, int] = {}
        self._contracts: dict[str, Contract] = {}
        self._sinks: list[EventSink] = []
        self._committed = 0
        self._address_counter = 0
        self._tx: Optional[TxContext] = None

    # Registry

    def new_address(self) -> str:
        """Allocate a fresh deterministic contract address."""
        self._address_counter += 1
        digest = Web3.keccak(encode(["uint256", "uint256"], [self.chain_id, self._address_counter]))
        return Web3.to_checksum_address(digest[-20:])

    def register(self, contract: Contract) -> None:
        if contract.address in self._contracts:
            raise ValueError(f"Address already in use: {contract.address}")
        self._contracts[contract.address] = contract

    def contract(self, address: str, kind: type[C] = Contract) -> Optional[C]:
        """Contract deployed at ``address`` if it is an instance of ``kind``."""
        found = self._contracts.get(address)
        return found if isinstance(found, kind) else None

    # Blocks

    def mine(self, blocks: int = 1, seconds_per_block: int = 12) -> int:
        self.block_number += blocks
        self.timestamp += blocks * seconds_per_block
        return self.block_number

    # Native coin

    def fund(self, address: str, amount: int) -> None:
        """Mint native coin to an account (test and demo faucet)."""
        self._balances[address] = self._balances.get(address, 0) + amount

    def balance_of(self, address: str) -> int:
        return self._balances.get(address, 0)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise Revert("negative transfer")
        if self._balances.get(sender, 0) < amount:
            raise Revert("insufficient native balance")
        self._balances[sender] = self._balances.get(sender, 0) - amount
        self._balances[to] = self._balances.get(to, 0) + amount

    # Events

    def emit(self, address: str, name: str, args: dict[str, Any]) -> None:
        self.events.append(Event(address=address, name=name, args=args, block_number=self.block_number))

    def add_event_sink(self, sink: EventSink) -> None:
        """Register a callable that receives every committed event."""
        self._sinks.append(sink)

    def commit_events(self) -> None:
        for event in self.events.since(self._committed):
            for sink in self._sinks:
                sink(event)
        self._committed = len(self.events)

    # Execution

    @property
    def tx(self) -> Optional[TxContext]:
        return self._tx

    def gas_left(self) -> int:
        return self._tx.meter.gas_left if self._tx else self.block_gas_limit

    def use_gas(self, amount: int) -> None:
        if self._tx:
            self._tx.meter.consume(amount)

    def _frame(self, gas: int) -> ContextManager:
        return self._tx.meter.frame(gas) if self._tx else nullcontext(gas)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Roll back every contract, balance and event if the block raises."""
        contracts = {address: contract.snapshot() for address, contract in self._contracts.items()}
        balances = dict(self._balances)
        event_count = len(self.events)
        try:
            yield
        except BaseException:
            for address in [address for address in self._contracts if address not in contracts]:
                del self._contracts[address]
            for address, state in contracts.items():
                self._contracts[address].restore(state)
            self._balances = balances
            self.events.truncate(event_count)
            raise

    def call(self, gas: int, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> CallResult:
        """
        Run ``fn`` as a bounded, revertible sub-call.

        A ``Revert`` (including running out of the allotted gas) rolls back
        the sub-call's effects and is reported as ``success=False``; other
        exceptions propagate.
        """
        try:
            with self._frame(gas), self.savepoint():
                value = fn(*args, **kwargs)
        except Revert as exc:
            logger.debug("sub_call_reverted", target=getattr(fn, "__qualname__", repr(fn)), reason=str(exc))
            return CallResult(success=False, error=exc)
        return CallResult(success=True, value=value)

    @contextmanager
    def transaction(
        self, origin: str, gas_limit: Optional[int] = None, gas_price: int = 0
    ) -> Iterator[TxContext]:
        """
        Execute a top-level transaction.

        All effects are rolled back if the block raises; on success the
        transaction's events are delivered to the event sinks.
        """
        if self._tx is not None:
            raise RuntimeError("Nested transactions are not supported")
        limit = self.block_gas_limit if gas_limit is None else gas_limit
        self._tx = TxContext(origin=origin, gas_price=gas_price, gas_limit=limit, meter=GasMeter(limit))
        try:
            with self.savepoint():
                yield self._tx
            self.commit_events()
        finally:
            self._tx = None
