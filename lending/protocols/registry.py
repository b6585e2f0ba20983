"""Protocol and flash-loan venue registry.

Maps protocol ids to their classes and builds the adapters and venues
available on a chain.
"""

import logging
from typing import Dict, List, Type

from web3 import AsyncWeb3

from lending.core.errors import LendingError
from lending.core.flashloan import (
    BALANCER_V2_CHAIN_IDS,
    BalancerV2FlashLoanVenue,
    FlashLoanVenue,
    MorphoBlueFlashLoanVenue,
)
from lending.protocols.aave_v3 import AaveV3FlashLoanVenue, AaveV3Protocol
from lending.protocols.base import LendingProtocol
from lending.protocols.morpho_blue import MorphoBlueProtocol
from lending.protocols.radiant_v2 import RadiantV2Protocol
from lending.protocols.spark import SparkProtocol

logger = logging.getLogger(__name__)

PROTOCOLS: Dict[str, Type[LendingProtocol]] = {
    AaveV3Protocol.ID: AaveV3Protocol,
    SparkProtocol.ID: SparkProtocol,
    MorphoBlueProtocol.ID: MorphoBlueProtocol,
    RadiantV2Protocol.ID: RadiantV2Protocol,
}


def get_protocol_class(protocol_id: str) -> Type[LendingProtocol]:
    protocol_class = PROTOCOLS.get(protocol_id)
    if protocol_class is None:
        raise LendingError(f"Unknown protocol: {protocol_id}. Known: {list(PROTOCOLS.keys())}")
    return protocol_class


def get_protocol_ids(chain_id: int) -> List[str]:
    """Ids of the protocols deployed on ``chain_id``."""
    return [
        protocol_id
        for protocol_id, protocol_class in PROTOCOLS.items()
        if chain_id in protocol_class.supported_chain_ids()
    ]


def create_protocols(chain_id: int, web3: AsyncWeb3 | None = None) -> List[LendingProtocol]:
    protocols = [PROTOCOLS[protocol_id](chain_id, web3) for protocol_id in get_protocol_ids(chain_id)]
    logger.debug(f"Created protocols for chain {chain_id}: {[protocol.id for protocol in protocols]}")
    return protocols


def create_flash_loan_venues(chain_id: int, protocols: List[LendingProtocol]) -> List[FlashLoanVenue]:
    """Balancer V2 where deployed, plus the venues the given protocols provide."""
    venues: List[FlashLoanVenue] = []
    if chain_id in BALANCER_V2_CHAIN_IDS:
        venues.append(BalancerV2FlashLoanVenue(chain_id))
    for protocol in protocols:
        if isinstance(protocol, AaveV3Protocol) and protocol.LENDS_FLASH_LOANS:
            # Spark is an Aave V3 fork and lends through the same pool interface
            venues.append(AaveV3FlashLoanVenue(protocol))
        elif isinstance(protocol, MorphoBlueProtocol):
            venues.append(MorphoBlueFlashLoanVenue(chain_id))
    return venues
