"""
Configuration for the relay protocol engine.

``RelayHubConfig`` is the governance-controlled hub configuration,
``MeteringModel`` the gas constants of the execution host, and ``Settings``
the environment-driven defaults for both.
"""

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .eip712 import DEFAULT_DOMAIN_NAME, DEFAULT_DOMAIN_VERSION

ETHER = 10**18


class RelayHubConfig(BaseModel):
    """Hub configuration, replaced as a whole by governance."""

    model_config = ConfigDict(frozen=True)

    max_worker_count: int = Field(default=10, ge=0, description="Max workers per relay manager")
    gas_reserve: int = Field(
        default=300_000,
        ge=0,
        description="Gas kept back from the inner call so the outer stage can finish",
    )
    post_overhead: int = Field(
        default=30_000, ge=0, description="Hub bookkeeping gas billed after postRelayedCall"
    )
    gas_overhead: int = Field(
        default=10_000, ge=0, description="Fixed gas added to every measured charge"
    )
    maximum_recipient_deposit: int = Field(
        default=1_000_000 * ETHER, ge=0, description="Upper bound for a single deposit"
    )
    minimum_unstake_delay: int = Field(default=0, ge=0, description="Blocks")
    minimum_stake: int = Field(default=ETHER // 10, ge=0, description="Native coin units")
    data_gas_cost_per_byte: int = Field(default=16, ge=0)
    external_call_data_cost_overhead: int = Field(default=120_000, ge=0)


class MeteringModel(BaseModel):
    """
    Gas constants of the execution host.

    These are properties of the host's metering rules rather than of the
    protocol; a different host prices the same work differently.
    """

    model_config = ConfigDict(frozen=True)

    # A sub-call receives at most (divisor - 1) / divisor of the remaining gas
    gas_forwarding_divisor: int = Field(default=64, ge=1)
    paymaster_limits_gas: int = Field(default=50_000, ge=0)
    relay_call_gas: int = Field(default=30_000, ge=0)
    inner_relay_call_gas: int = Field(default=10_000, ge=0)
    charge_accounting_gas: int = Field(default=10_000, ge=0)
    signature_verification_gas: int = Field(default=10_000, ge=0)
    value_transfer_gas: int = Field(default=40_000, ge=0)

    def forwardable(self, gas_left: int) -> int:
        """Gas a sub-call may receive out of ``gas_left``."""
        return gas_left * (self.gas_forwarding_divisor - 1) // self.gas_forwarding_divisor


class Settings(BaseSettings):
    """
    Environment-based settings.

    All settings can be overridden via ``GSN_``-prefixed environment
    variables, e.g. ``GSN_RELAY_HUB__MINIMUM_STAKE`` or
    ``GSN_METERING__RELAY_CALL_GAS``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GSN_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Host
    chain_id: int = Field(default=1337, description="Chain id baked into domain separators")
    block_gas_limit: int = Field(default=30_000_000, description="Per-block gas limit")

    # Relayed transaction domain
    domain_name: str = DEFAULT_DOMAIN_NAME
    domain_version: str = DEFAULT_DOMAIN_VERSION

    # Event persistence
    database_url: str = "sqlite:///./gsn_relay.db"

    relay_hub: RelayHubConfig = Field(default_factory=RelayHubConfig)
    metering: MeteringModel = Field(default_factory=MeteringModel)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
