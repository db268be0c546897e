"""
Tests for the committed-event store.
"""

import pytest

from gsn_relay.db import EventDatabase, parse_database_url
from gsn_relay.errors import Revert
from gsn_relay.models import RelayCallStatus


@pytest.fixture
def database(tmp_path):
    db = EventDatabase(f"sqlite:///{tmp_path / 'events.db'}")
    yield db
    db.close()


class TestEventDatabase:
    """Tests for EventDatabase."""

    def test_records_committed_relay(self, network, database) -> None:
        network.host.add_event_sink(database.record)

        result = network.relay(network.build_request())

        (relayed,) = database.get_events(name="TransactionRelayed")
        assert relayed.contract == network.hub.address
        assert relayed.block_number == network.host.block_number
        assert relayed.args["status"] == RelayCallStatus.OK.name
        assert relayed.args["charge"] == result.charge
        assert relayed.args["selector"].startswith("0x")
        assert database.get_events(name="Incremented", contract=network.recipient.address)

    def test_rolled_back_transaction_is_not_recorded(self, network, database) -> None:
        network.host.add_event_sink(database.record)
        owner = network.accounts.owner.address

        with pytest.raises(Revert):
            with network.host.transaction(owner):
                network.hub.deprecate_hub(owner, network.host.block_number + 10)
                raise Revert("abort")

        assert database.count() == 0
        assert not network.hub.is_deprecated()

    def test_events_outside_transactions_are_not_recorded(self, network, database) -> None:
        network.host.add_event_sink(database.record)

        network.hub.deposit_for(network.accounts.sponsor.address, network.paymaster.address, 1)

        assert database.count() == 0

    def test_large_integers_stored_as_strings(self, bare_network, database) -> None:
        bare_network.host.add_event_sink(database.record)
        owner = bare_network.accounts.owner.address

        with bare_network.host.transaction(owner):
            bare_network.hub.deprecate_hub(owner, 2**255)

        (event,) = database.get_events(name="HubDeprecated")
        assert event.args["from_block"] == str(2**255)

    def test_filter_by_contract(self, network, database) -> None:
        network.host.add_event_sink(database.record)
        network.relay(network.build_request())

        events = database.get_events(contract=network.forwarder.address)

        assert events == []
        assert database.count() == len(database.get_events())


class TestParseDatabaseUrl:
    """Tests for parse_database_url."""

    def test_postgres_scheme_normalized(self) -> None:
        assert parse_database_url("postgres://u:p@db:5432/gsn") == "postgresql://u:p@db:5432/gsn"

    def test_sqlite_unchanged(self) -> None:
        assert parse_database_url("sqlite:///./gsn_relay.db") == "sqlite:///./gsn_relay.db"

    def test_password_masked(self, database) -> None:
        assert database._mask_url("postgresql://u:secret@db/gsn") == "postgresql://u:***@db/gsn"
