"""Token metadata for ERC20 tokens.

Built-in list of common tokens per chain, keyed by checksummed address.
"""

from __future__ import annotations

from typing import Dict

from lending.core.token import NATIVE_TOKENS, WRAPPED_NATIVE_TOKENS, Token


def _tokens(chain_id: int, *entries) -> Dict[str, Token]:
    tokens = [NATIVE_TOKENS[chain_id], WRAPPED_NATIVE_TOKENS[chain_id]]
    tokens.extend(Token(chain_id, *entry) for entry in entries)
    return {token.address: token for token in tokens}


# chain id -> checksum address -> Token
KNOWN_TOKENS: Dict[int, Dict[str, Token]] = {
    1: _tokens(
        1,
        ("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USDC", "USD Coin"),
        ("0xdAC17F958D2ee523a2206206994597C13D831ec7", 6, "USDT", "Tether USD"),
        ("0x6B175474E89094C44Da98b954EedeAC495271d0F", 18, "DAI", "Dai Stablecoin"),
        ("0x83F20F44975D03b1b09e64809B757c47f942BEeA", 18, "sDAI", "Savings Dai"),
        ("0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", 8, "WBTC", "Wrapped BTC"),
        ("0x7f39C581F595B53c5cb19bD0b3f8dA6c935E2Ca0", 18, "wstETH", "Wrapped stETH"),
        ("0xae78736Cd615f374D3085123A210448E74Fc6393", 18, "rETH", "Rocket Pool ETH"),
        ("0x40D16FC0246aD3160Ccc09B8D0D3A2cD28aE6C2f", 18, "GHO", "Gho Token"),
    ),
    10: _tokens(
        10,
        ("0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85", 6, "USDC", "USD Coin"),
        ("0x94b008aA00579c1307B0EF2c499aD98a8ce58e58", 6, "USDT", "Tether USD"),
        ("0x1F32b1c2345538c0c6f582fCB022739c4A194Ebb", 18, "wstETH", "Wrapped stETH"),
    ),
    56: _tokens(
        56,
        ("0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 18, "USDC", "USD Coin"),
        ("0x55d398326f99059fF775485246999027B3197955", 18, "USDT", "Tether USD"),
        ("0x7130d2A12B9BCbFAe4f2634d864A1Ee1Ce3Ead9c", 18, "BTCB", "Binance-Peg BTCB"),
    ),
    8453: _tokens(
        8453,
        ("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6, "USDC", "USD Coin"),
        ("0xc1CBa3fCea344f92D9239c08C0568f6F2F0ee452", 18, "wstETH", "Wrapped stETH"),
        ("0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", 18, "cbETH", "Coinbase Wrapped Staked ETH"),
    ),
    42161: _tokens(
        42161,
        ("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6, "USDC", "USD Coin"),
        ("0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", 6, "USDT", "Tether USD"),
        ("0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f", 8, "WBTC", "Wrapped BTC"),
        ("0x5979D7b546E38E414F7E9822514be443A4800529", 18, "wstETH", "Wrapped stETH"),
    ),
}


def get_known_token(chain_id: int, symbol: str) -> Token:
    """Look up a built-in token by symbol (no RPC call).

    Raises:
        KeyError: The symbol is not in the built-in list for the chain
    """
    for token in KNOWN_TOKENS.get(chain_id, {}).values():
        if token.symbol == symbol:
            return token
    raise KeyError(f"Unknown token {symbol} on chain {chain_id}")

