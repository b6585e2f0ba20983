"""Per-chain Web3 connections.

One ``AsyncWeb3`` instance is kept per chain id and shared by every adapter
reading from that chain.
"""

import logging
from typing import Dict

from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.eth import AsyncEth

from lending.config import CHAIN_NAMES, get_settings
from lending.core.errors import UnsupportedChainError

logger = logging.getLogger(__name__)

_web3_instances: Dict[int, AsyncWeb3] = {}


def get_web3(chain_id: int) -> AsyncWeb3:
    """Get the shared Web3 instance for ``chain_id``."""
    if chain_id not in CHAIN_NAMES:
        raise UnsupportedChainError(
            f"Unsupported chain: {chain_id}. Supported: {list(CHAIN_NAMES.keys())}"
        )
    web3 = _web3_instances.get(chain_id)
    if web3 is None:
        rpc_url = get_settings().get_rpc_url(chain_id)
        logger.debug(f"Connecting to {CHAIN_NAMES[chain_id]} RPC at {rpc_url}")
        web3 = AsyncWeb3(
            AsyncHTTPProvider(rpc_url),
            modules={"eth": (AsyncEth,)},
        )
        _web3_instances[chain_id] = web3
    return web3


def reset_web3_instances() -> None:
    _web3_instances.clear()
