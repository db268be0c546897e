"""
Penalizer - the account-gated principal allowed to slash relay managers.

Detecting misbehavior (e.g. a worker signing two transactions with the same
nonce) happens off-protocol; the owner submits the verdict here.
"""

from typing import Optional

import structlog

from .errors import PenalizerError
from .host import Contract, Host
from .models import ZERO_ADDRESS
from .relay_hub import RelayHub
from .stake_manager import StakeManager

logger = structlog.get_logger()


class Penalizer(Contract):
    def __init__(self, host: Host, owner: str, address: Optional[str] = None):
        super().__init__(host, address)
        self.owner = owner

    def penalize_relay_worker(
        self, sender: str, relay_hub: str, relay_worker: str, beneficiary: str
    ) -> int:
        """
        Slash the whole stake of the manager behind ``relay_worker``.

        Returns:
            The amount paid to ``beneficiary``
        """
        if sender != self.owner:
            raise PenalizerError("caller is not the owner")

        hub = self.host.contract(relay_hub, RelayHub)
        if hub is None or hub.penalizer != self.address:
            raise PenalizerError("relay hub does not accept this penalizer")

        relay_manager = hub.worker_to_manager(relay_worker)
        if relay_manager == ZERO_ADDRESS:
            raise PenalizerError("Unknown relay worker")

        stake_manager = self.host.contract(hub.stake_manager, StakeManager)
        if stake_manager is None:
            raise PenalizerError("stake manager is not deployed")
        stake = stake_manager.get_stake_info(relay_manager).stake

        logger.warning(
            "penalizing_relay_worker",
            relay_hub=relay_hub,
            relay_worker=relay_worker,
            relay_manager=relay_manager,
            beneficiary=beneficiary,
            stake=stake,
        )
        return stake_manager.penalize_relay_manager(self.address, relay_manager, beneficiary, stake)
