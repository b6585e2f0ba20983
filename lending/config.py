from pydantic_settings import BaseSettings
from pydantic import Field, model_validator
from functools import lru_cache
from typing import Self

# Chain ids handled by the engine and the names used for per-chain settings
CHAIN_NAMES = {
    1: "ethereum",
    10: "optimism",
    56: "bnb",
    8453: "base",
    42161: "arbitrum",
}


class Settings(BaseSettings):
    # Chain-specific RPC URLs (others fall back to ETHEREUM_RPC_URL)
    ethereum_rpc_url: str = Field(
        default="https://eth.llamarpc.com", description="Ethereum mainnet RPC URL"
    )
    arbitrum_rpc_url: str | None = Field(
        default=None, description="Arbitrum One RPC URL (optional, falls back to ethereum_rpc_url)"
    )
    base_rpc_url: str | None = Field(
        default=None, description="Base RPC URL (optional, falls back to ethereum_rpc_url)"
    )
    optimism_rpc_url: str | None = Field(
        default=None, description="Optimism RPC URL (optional, falls back to ethereum_rpc_url)"
    )
    bnb_rpc_url: str | None = Field(
        default=None, description="BNB Smart Chain RPC URL (optional, falls back to ethereum_rpc_url)"
    )

    quote_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for one planner's concurrent quote requests"
    )
    swap_slippage_bps: int = Field(
        default=100, description="Slippage tolerance applied to swap quotes (100 = 1%)"
    )
    paraswap_api_url: str = Field(
        default="https://apiv5.paraswap.io", description="ParaSwap V5 API base URL"
    )
    paraswap_partner: str = Field(
        default="lending-engine", description="Partner tag sent with ParaSwap requests"
    )
    reserve_cache_ttl_seconds: float = Field(
        default=60.0, description="TTL for cached reserve data and flash-loan premiums"
    )
    log_level: str = Field(default="INFO", description="Root log level")

    @model_validator(mode="after")
    def check_slippage(self) -> Self:
        """Slippage must leave a non-zero minimum output."""
        if not 0 <= self.swap_slippage_bps < 10000:
            raise ValueError(f"swap_slippage_bps must be in [0, 10000), got {self.swap_slippage_bps}")
        return self

    def get_rpc_url(self, chain: str | int) -> str:
        """Get RPC URL for a chain name or id with fallback to ethereum_rpc_url."""
        if isinstance(chain, int):
            chain = CHAIN_NAMES.get(chain, "ethereum")
        chain = chain.lower()
        chain_url = getattr(self, f"{chain}_rpc_url", None)
        return chain_url or self.ethereum_rpc_url

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
