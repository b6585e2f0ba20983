"""
Multicall3 batching for market reads.

Market snapshots need several view calls against the same block (position,
market totals, market params, oracle price). Multicall3 returns them from one
``eth_call`` so the values are consistent with each other.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from web3 import AsyncWeb3
from eth_abi import decode, encode

logger = logging.getLogger(__name__)

# Multicall3 is deployed at the same address on all major EVM chains
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"},
                ],
                "name": "calls",
                "type": "tuple[]",
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"},
                ],
                "name": "returnData",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]


@dataclass
class Call:
    """One view call in a batch, with the types needed to decode its result."""
    target: str
    call_data: bytes
    output_types: Sequence[str]
    allow_failure: bool = False


@dataclass
class CallResult:
    success: bool
    return_data: bytes


class MulticallService:
    def __init__(self, web3: AsyncWeb3):
        self._web3 = web3
        self._multicall_contract = web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(MULTICALL3_ADDRESS),
            abi=MULTICALL3_ABI,
        )

    def build_call(
        self,
        target: str,
        function_signature: str,
        input_types: Sequence[str],
        input_values: Sequence[Any],
        output_types: Sequence[str],
        allow_failure: bool = False,
    ) -> Call:
        """
        Encode a call from its signature.

        Args:
            target: Contract address
            function_signature: e.g. "position(bytes32,address)"
            input_types: ABI types of the arguments
            input_values: Argument values
            output_types: ABI types of the return values
            allow_failure: Whether the batch may continue if this call reverts

        Returns:
            Call ready for execute()
        """
        selector = AsyncWeb3.keccak(text=function_signature)[:4]
        call_data = selector + encode(list(input_types), list(input_values)) if input_types else selector
        return Call(
            target=AsyncWeb3.to_checksum_address(target),
            call_data=bytes(call_data),
            output_types=output_types,
            allow_failure=allow_failure,
        )

    async def execute(self, calls: List[Call]) -> List[CallResult]:
        """Execute a batch in a single ``eth_call``."""
        if not calls:
            return []

        formatted_calls = [
            (call.target, call.allow_failure, call.call_data)
            for call in calls
        ]
        try:
            results = await self._multicall_contract.functions.aggregate3(formatted_calls).call()
        except Exception as e:
            logger.error(f"Multicall execution failed ({len(calls)} calls): {e}")
            raise

        return [CallResult(success=result[0], return_data=result[1]) for result in results]

    async def execute_and_decode(self, calls: List[Call]) -> List[Tuple[Any, ...] | None]:
        """Execute a batch and decode each result; failed calls decode to None."""
        results = await self.execute(calls)
        return [
            self.decode_result(result, call.output_types)
            for call, result in zip(calls, results)
        ]

    @staticmethod
    def decode_result(result: CallResult, output_types: Sequence[str]) -> Tuple[Any, ...] | None:
        if not result.success or not result.return_data:
            return None
        return decode(list(output_types), result.return_data)
