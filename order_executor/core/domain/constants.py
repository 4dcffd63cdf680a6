# order_executor/core/domain/constants.py

from dataclasses import dataclass

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

PRECISION_DECIMALS = 30
BASIS_POINT_DIVISOR = 10_000

ACCUMULATE_STRATEGY = ("grid", "dca")
DEFAULT_TAKE_PROFIT_PERCENTAGE = 1000
DEFAULT_STOP_LOSS_PERCENTAGE = 3000
DEFAULT_SLIPPAGE_BPS = 500

# network fee buffer, in basis points (1.5x)
ORDER_GAS_BUFFER = 15_000

# EVM swap gas used for the pre-trade network fee estimate
DEFAULT_SWAP_GAS_UNITS = 400_000

# Solana fee model
SOLANA_BASE_FEE = 5_000                    # lamports per signature
DEFAULT_SOLANA_PRIORITY_FEE = 30_000       # micro-lamports per compute unit
DEFAULT_COMPUTE_UNIT = 250_000
SOL_MINT = "So11111111111111111111111111111111111111112"
SOLANA_SYSTEM_PROGRAM = "11111111111111111111111111111111"

# keccak("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

JOE_AGGREGATOR_ROUTER = "0x45A62B090DF48243F12A21897e7ed91863E2c86b"


class Chains:
    ETHEREUM = 1
    AVALANCHE = 43114
    ARBITRUM = 42161
    SOLANA = 1399811149


@dataclass(frozen=True)
class NativeToken:
    name: str
    symbol: str
    decimals: int
    address: str   # wrapped native, used for oracle lookups


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    family: str    # "EVM" | "SVM"
    native: NativeToken
    explorer_url: str
    default_gas_range: int   # max buffered network fee accepted for one swap, in native base units


CHAIN_CONFIG: dict[int, ChainConfig] = {
    Chains.ETHEREUM: ChainConfig(
        chain_id=Chains.ETHEREUM,
        name="ETHEREUM",
        family="EVM",
        native=NativeToken("WETH", "ETH", 18, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"),
        explorer_url="https://etherscan.io",
        default_gas_range=10_000_000_000_000,
    ),
    Chains.AVALANCHE: ChainConfig(
        chain_id=Chains.AVALANCHE,
        name="AVALANCHE",
        family="EVM",
        native=NativeToken("WAVAX", "AVAX", 18, "0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7"),
        explorer_url="https://snowscan.xyz",
        default_gas_range=2_000_000_000_000_000,
    ),
    Chains.ARBITRUM: ChainConfig(
        chain_id=Chains.ARBITRUM,
        name="ARBITRUM",
        family="EVM",
        native=NativeToken("WETH", "ETH", 18, "0x82af49447d8a07e3bd95bd0d56f35241523fbab1"),
        explorer_url="https://arbiscan.io",
        default_gas_range=40_000_000_000_000,
    ),
    Chains.SOLANA: ChainConfig(
        chain_id=Chains.SOLANA,
        name="SOLANA",
        family="SVM",
        native=NativeToken("WSOL", "SOL", 9, SOL_MINT),
        explorer_url="https://explorer.solana.com",
        default_gas_range=10_000_000,
    ),
}

# collateral tokens whose USD price is cached by the price refresher (natives are priced via wrapped)
COLLATERAL_TOKENS: dict[int, list[str]] = {
    Chains.ETHEREUM: [
        "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
        "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    ],
    Chains.AVALANCHE: [
        "0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7",
        "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
    ],
    Chains.ARBITRUM: [
        "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
        "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    ],
    Chains.SOLANA: [
        SOL_MINT,
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    ],
}


def is_native(address: str | None) -> bool:
    return (address or "").lower() == NATIVE_TOKEN_ADDRESS


def is_solana(chain_id: int) -> bool:
    return chain_id == Chains.SOLANA
