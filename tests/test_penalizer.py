"""
Tests for the Penalizer.
"""

import pytest

from gsn_relay.config import ETHER
from gsn_relay.errors import GuardError, PenalizerError
from gsn_relay.penalizer import Penalizer
from gsn_relay.relay_hub import RelayHub


class TestPenalizeRelayWorker:
    """Tests for penalize_relay_worker."""

    def test_slashes_whole_stake_to_beneficiary(self, network) -> None:
        beneficiary = network.accounts.beneficiary.address
        manager = network.accounts.manager.address

        reward = network.penalizer.penalize_relay_worker(
            network.accounts.owner.address,
            network.hub.address,
            network.accounts.worker.address,
            beneficiary,
        )

        assert reward == ETHER
        assert network.host.balance_of(beneficiary) == ETHER
        assert network.stake_manager.get_stake_info(manager).stake == 0
        assert not network.hub.is_relay_manager_staked(manager)

    def test_penalized_manager_cannot_relay(self, network) -> None:
        network.penalizer.penalize_relay_worker(
            network.accounts.owner.address,
            network.hub.address,
            network.accounts.worker.address,
            network.accounts.beneficiary.address,
        )

        with pytest.raises(GuardError, match="not staked"):
            network.relay(network.build_request())

    def test_owner_only(self, network) -> None:
        with pytest.raises(PenalizerError, match="not the owner"):
            network.penalizer.penalize_relay_worker(
                network.accounts.other.address,
                network.hub.address,
                network.accounts.worker.address,
                network.accounts.other.address,
            )

    def test_unknown_worker(self, network) -> None:
        with pytest.raises(PenalizerError, match="Unknown relay worker"):
            network.penalizer.penalize_relay_worker(
                network.accounts.owner.address,
                network.hub.address,
                network.accounts.other.address,
                network.accounts.beneficiary.address,
            )

    def test_hub_with_other_penalizer(self, network) -> None:
        """A penalizer can only slash through hubs that name it."""
        other_penalizer = Penalizer(network.host, network.accounts.owner.address)
        hub = RelayHub(
            network.host,
            network.accounts.owner.address,
            network.stake_manager.address,
            other_penalizer.address,
        )

        with pytest.raises(PenalizerError, match="does not accept"):
            network.penalizer.penalize_relay_worker(
                network.accounts.owner.address,
                hub.address,
                network.accounts.worker.address,
                network.accounts.beneficiary.address,
            )

    def test_second_penalty_pays_nothing(self, network) -> None:
        args = (
            network.accounts.owner.address,
            network.hub.address,
            network.accounts.worker.address,
            network.accounts.beneficiary.address,
        )
        network.penalizer.penalize_relay_worker(*args)

        assert network.penalizer.penalize_relay_worker(*args) == 0
        assert network.host.balance_of(network.accounts.beneficiary.address) == ETHER
