"""
StakeManager - bonded, slashable stake of relay managers.

A relay manager is backed by a stake that only its owner can add or
withdraw, and is authorized per relay hub. Withdrawing a stake or leaving a
hub takes effect only after the manager's unstake delay, so a penalizer has
time to slash a misbehaving manager.
"""

from typing import Optional

import structlog

from .errors import StakeManagerError
from .host import Contract, Host
from .models import MAX_UINT256, ZERO_ADDRESS, StakeInfo

logger = structlog.get_logger()


class StakeManager(Contract):
    def __init__(self, host: Host, penalizer: str, address: Optional[str] = None):
        super().__init__(host, address)
        self.penalizer = penalizer
        self.stakes: dict[str, StakeInfo] = {}
        # relay manager -> relay hub -> removal block
        self.authorized_hubs: dict[str, dict[str, int]] = {}

    def get_stake_info(self, relay_manager: str) -> StakeInfo:
        return self.stakes.get(relay_manager, StakeInfo())

    def get_authorized_hub(self, relay_manager: str, relay_hub: str) -> int:
        """Block at which ``relay_hub`` stops accepting ``relay_manager``; 0 if never authorized."""
        return self.authorized_hubs.get(relay_manager, {}).get(relay_hub, 0)

    def _require_owner(self, sender: str, relay_manager: str) -> StakeInfo:
        info = self.get_stake_info(relay_manager)
        if info.owner == ZERO_ADDRESS or info.owner != sender:
            raise StakeManagerError("not owner")
        return info

    def _require_manager(self, sender: str) -> StakeInfo:
        info = self.get_stake_info(sender)
        if info.owner == ZERO_ADDRESS:
            raise StakeManagerError("not manager")
        return info

    # Ownership and stake

    def set_relay_manager_owner(self, sender: str, owner: str) -> None:
        """Called by a relay manager to name its owner; can be done only once."""
        if owner == ZERO_ADDRESS:
            raise StakeManagerError("invalid owner")
        info = self.stakes.setdefault(sender, StakeInfo())
        if info.owner != ZERO_ADDRESS:
            raise StakeManagerError("already owned")
        info.owner = owner

        self.emit("OwnerSet", relay_manager=sender, owner=owner)
        logger.info("relay_manager_owner_set", relay_manager=sender, owner=owner)

    def stake_for_relay_manager(
        self, sender: str, relay_manager: str, unstake_delay: int, value: int
    ) -> None:
        """
        Add ``value`` to the manager's stake and set its unstake delay.

        The delay can only grow, and may not fall below the minimum of any
        hub the manager is currently authorized for.
        """
        info = self._require_owner(sender, relay_manager)
        if sender == relay_manager:
            raise StakeManagerError("relay manager cannot stake for itself")
        if unstake_delay < info.unstake_delay:
            raise StakeManagerError("unstakeDelay cannot be decreased")

        for relay_hub, removal_block in self.authorized_hubs.get(relay_manager, {}).items():
            if removal_block <= self.host.block_number:
                continue
            hub = self.host.contract(relay_hub)
            get_configuration = getattr(hub, "get_configuration", None)
            if get_configuration and unstake_delay < get_configuration().minimum_unstake_delay:
                raise StakeManagerError("unstake delay below hub minimum")

        self.host.transfer(sender, self.address, value)
        info.stake += value
        info.unstake_delay = unstake_delay

        self.emit(
            "StakeAdded",
            relay_manager=relay_manager,
            owner=sender,
            stake=info.stake,
            unstake_delay=unstake_delay,
        )
        logger.info(
            "stake_added",
            relay_manager=relay_manager,
            owner=sender,
            stake=info.stake,
            unstake_delay=unstake_delay,
        )

    def unlock_stake(self, sender: str, relay_manager: str) -> int:
        """Schedule withdrawal of the stake; returns the block it becomes withdrawable."""
        info = self._require_owner(sender, relay_manager)
        if info.withdraw_block != 0:
            raise StakeManagerError("already pending")
        info.withdraw_block = self.host.block_number + info.unstake_delay

        self.emit(
            "StakeUnlocked",
            relay_manager=relay_manager,
            owner=sender,
            withdraw_block=info.withdraw_block,
        )
        logger.info("stake_unlocked", relay_manager=relay_manager, withdraw_block=info.withdraw_block)
        return info.withdraw_block

    def withdraw_stake(self, sender: str, relay_manager: str) -> int:
        """Pay out an unlocked stake to the owner once its withdraw block is reached."""
        info = self._require_owner(sender, relay_manager)
        if info.withdraw_block == 0:
            raise StakeManagerError("Withdrawal is not scheduled")
        if info.withdraw_block > self.host.block_number:
            raise StakeManagerError("Withdrawal is not due")

        amount = info.stake
        info.stake = 0
        info.withdraw_block = 0
        self.host.transfer(self.address, sender, amount)

        self.emit("StakeWithdrawn", relay_manager=relay_manager, owner=sender, amount=amount)
        logger.info("stake_withdrawn", relay_manager=relay_manager, owner=sender, amount=amount)
        return amount

    # Hub authorization

    def authorize_hub_by_owner(self, sender: str, relay_manager: str, relay_hub: str) -> None:
        self._require_owner(sender, relay_manager)
        self._authorize_hub(relay_manager, relay_hub)

    def authorize_hub_by_manager(self, sender: str, relay_hub: str) -> None:
        self._require_manager(sender)
        self._authorize_hub(sender, relay_hub)

    def _authorize_hub(self, relay_manager: str, relay_hub: str) -> None:
        self.authorized_hubs.setdefault(relay_manager, {})[relay_hub] = MAX_UINT256
        self.emit("HubAuthorized", relay_manager=relay_manager, relay_hub=relay_hub)
        logger.info("hub_authorized", relay_manager=relay_manager, relay_hub=relay_hub)

    def unauthorize_hub_by_owner(self, sender: str, relay_manager: str, relay_hub: str) -> int:
        self._require_owner(sender, relay_manager)
        return self._unauthorize_hub(relay_manager, relay_hub)

    def unauthorize_hub_by_manager(self, sender: str, relay_hub: str) -> int:
        self._require_manager(sender)
        return self._unauthorize_hub(sender, relay_hub)

    def _unauthorize_hub(self, relay_manager: str, relay_hub: str) -> int:
        if self.get_authorized_hub(relay_manager, relay_hub) != MAX_UINT256:
            raise StakeManagerError("hub not authorized")
        removal_block = self.host.block_number + self.get_stake_info(relay_manager).unstake_delay
        self.authorized_hubs[relay_manager][relay_hub] = removal_block

        self.emit(
            "HubUnauthorized",
            relay_manager=relay_manager,
            relay_hub=relay_hub,
            removal_block=removal_block,
        )
        logger.info(
            "hub_unauthorized",
            relay_manager=relay_manager,
            relay_hub=relay_hub,
            removal_block=removal_block,
        )
        return removal_block

    # Queries and penalties

    def is_relay_manager_staked(
        self, relay_manager: str, relay_hub: str, min_amount: int, min_unstake_delay: int
    ) -> bool:
        """Whether the manager has enough stake and delay and ``relay_hub`` still accepts it."""
        info = self.get_stake_info(relay_manager)
        return (
            info.stake > 0
            and info.stake >= min_amount
            and info.unstake_delay >= min_unstake_delay
            and self.get_authorized_hub(relay_manager, relay_hub) > self.host.block_number
        )

    def penalize_relay_manager(
        self, sender: str, relay_manager: str, beneficiary: str, amount: int
    ) -> int:
        """
        Slash up to ``amount`` of the manager's stake and pay it to ``beneficiary``.

        Only the penalizer may call this, and nothing else gates it.

        Returns:
            The amount actually slashed
        """
        if sender != self.penalizer:
            raise StakeManagerError("not penalizer")

        info = self.get_stake_info(relay_manager)
        slashed = min(amount, info.stake)
        if relay_manager in self.stakes:
            info.stake -= slashed
        self.host.transfer(self.address, beneficiary, slashed)

        self.emit(
            "StakePenalized",
            relay_manager=relay_manager,
            beneficiary=beneficiary,
            reward=slashed,
        )
        logger.warning(
            "stake_penalized",
            relay_manager=relay_manager,
            beneficiary=beneficiary,
            amount=slashed,
            remaining_stake=info.stake,
        )
        return slashed
