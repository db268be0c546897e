"""
Tests for the execution host: gas metering, revertible sub-calls and
transactions.
"""

import pytest

from gsn_relay.config import MeteringModel
from gsn_relay.errors import OutOfGas, Revert
from gsn_relay.host import Contract, GasMeter, Host


class Counter(Contract):
    def __init__(self, host: Host):
        super().__init__(host)
        self.value = 0
        self.history: list[int] = []

    def bump(self, gas: int = 0) -> int:
        self.host.use_gas(gas)
        self.value += 1
        self.history.append(self.value)
        self.emit("Bumped", value=self.value)
        return self.value

    def bump_and_revert(self) -> None:
        self.bump()
        raise Revert("nope")


class TestGasMeter:
    """Tests for GasMeter frames."""

    def test_consume(self) -> None:
        meter = GasMeter(1_000)
        meter.consume(300)

        assert meter.gas_left == 700
        assert meter.total_used == 300

    def test_out_of_gas_drains_frame(self) -> None:
        meter = GasMeter(1_000)

        with pytest.raises(OutOfGas):
            meter.consume(1_001)

        assert meter.gas_left == 0

    def test_child_frame_charges_parent(self) -> None:
        meter = GasMeter(1_000)
        with meter.frame(400) as allotted:
            assert allotted == 400
            meter.consume(150)
            assert meter.frame_used == 150

        assert meter.gas_left == 850

    def test_child_frame_capped_at_gas_left(self) -> None:
        meter = GasMeter(1_000)
        meter.consume(900)
        with meter.frame(5_000) as allotted:
            assert allotted == 100

    def test_failed_child_frame_is_charged_in_full(self) -> None:
        meter = GasMeter(1_000)
        with pytest.raises(OutOfGas):
            with meter.frame(400):
                meter.consume(500)

        assert meter.gas_left == 600

    def test_forwardable(self) -> None:
        assert MeteringModel().forwardable(6_400) == 6_300


class TestCall:
    """Tests for Host.call."""

    def test_success(self) -> None:
        host = Host()
        counter = Counter(host)

        result = host.call(100_000, counter.bump)

        assert result.success
        assert result.value == 1

    def test_revert_rolls_back_state_and_events(self) -> None:
        host = Host()
        counter = Counter(host)
        counter.bump()

        result = host.call(100_000, counter.bump_and_revert)

        assert not result.success
        assert result.revert_data == b"nope"
        assert counter.value == 1
        assert counter.history == [1]
        assert len(host.events.filter(name="Bumped")) == 1

    def test_out_of_gas_is_a_revert(self) -> None:
        host = Host()
        counter = Counter(host)

        with host.transaction("0x" + "01" * 20, gas_limit=100_000):
            result = host.call(10_000, counter.bump, 20_000)
            assert host.gas_left() == 90_000

        assert not result.success
        assert isinstance(result.error, OutOfGas)
        assert counter.value == 0

    def test_other_exceptions_propagate(self) -> None:
        host = Host()

        def broken() -> None:
            raise KeyError("bug")

        with pytest.raises(KeyError):
            host.call(1_000, broken)

    def test_rollback_removes_contracts_created_in_call(self) -> None:
        host = Host()

        def deploy_and_revert() -> None:
            Counter(host)
            raise Revert("undo")

        host.call(1_000, deploy_and_revert)

        assert len(host._contracts) == 0

    def test_contract_lookup_checks_kind(self) -> None:
        host = Host()
        counter = Counter(host)

        assert host.contract(counter.address, Counter) is counter
        assert host.contract(counter.address, GasMeter) is None
        assert host.contract("0x" + "02" * 20) is None


class TestTransaction:
    """Tests for Host.transaction."""

    def test_commit_delivers_events(self) -> None:
        host = Host()
        counter = Counter(host)
        received = []
        host.add_event_sink(received.append)

        with host.transaction("0x" + "01" * 20):
            counter.bump()

        assert [event.name for event in received] == ["Bumped"]
        assert host.tx is None

    def test_failed_transaction_rolls_back(self) -> None:
        host = Host()
        counter = Counter(host)
        received = []
        host.add_event_sink(received.append)
        sender, receiver = "0x" + "01" * 20, "0x" + "02" * 20
        host.fund(sender, 10)

        with pytest.raises(Revert):
            with host.transaction(sender):
                counter.bump()
                host.transfer(sender, receiver, 5)
                raise Revert("abort")

        assert counter.value == 0
        assert host.balance_of(sender) == 10
        assert host.balance_of(receiver) == 0
        assert len(host.events) == 0
        assert received == []

    def test_gas_is_metered_only_inside_transactions(self) -> None:
        host = Host(block_gas_limit=1_000_000)
        counter = Counter(host)

        counter.bump(5_000_000)
        with host.transaction("0x" + "01" * 20, gas_limit=50_000) as tx:
            counter.bump(20_000)
            assert tx.meter.total_used == 20_000
            assert host.gas_left() == 30_000

    def test_nested_transactions_rejected(self) -> None:
        host = Host()
        with host.transaction("0x" + "01" * 20):
            with pytest.raises(RuntimeError):
                with host.transaction("0x" + "01" * 20):
                    pass

    def test_transfer_without_balance(self) -> None:
        host = Host()
        with pytest.raises(Revert, match="insufficient native balance"):
            host.transfer("0x" + "01" * 20, "0x" + "02" * 20, 1)

    def test_mine(self) -> None:
        host = Host(block_number=10, timestamp=1_000)

        assert host.mine(3) == 13
        assert host.timestamp == 1_036
