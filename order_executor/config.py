import os
from dotenv import load_dotenv
from dataclasses import dataclass, field
from functools import lru_cache

load_dotenv()


def _csv(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return list(default)
    return [v.strip() for v in value.split(",") if v.strip()]


def _bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    # storage
    MONGODB_URI: str
    MONGODB_DB_NAME: str

    # chain RPC endpoints, keyed by chain id
    RPC_URLS: dict[int, list[str]]

    # swap-route aggregator router
    AGGREGATOR_BASE_URL: str
    EVM_AGGREGATORS: list[str]
    SOLANA_AGGREGATORS: list[str]

    # price oracle (GraphQL)
    ORACLE_URL: str
    ORACLE_API_KEY: str

    # wallet key custody
    WALLET_KEY_PASSWORD: str
    WALLET_KEY_ALGORITHM: str = "aes-256-cbc"

    EVM_ROUTE_TIMEOUT_SEC: float = 10.0
    SOLANA_ROUTE_TIMEOUT_SEC: float = 10.0
    HTTP_TIMEOUT_SEC: float = 15.0

    # protocol fee
    ORDER_TRADE_FEE_BPS: int = 10           # 0.1%
    ORDER_PRIORITY_FEE_BPS: int = 5
    ORDER_TRADE_FEE_EXEMPT_STATUS: list[str] = field(default_factory=lambda: ["admin"])
    EVM_TRADE_FEE_COLLECTOR: str = "0xfe7AB0137C85c9f05d03d69a35865277EA64DEba"
    SOLANA_TRADE_FEE_COLLECTOR: str = "BLvk55ch6uWM2j9YUX9pUfmfbuA8CWdXuDMZ3og3J4RN"

    # order lifecycle
    ORDER_MAX_RETRY: int = 3
    ORDER_MAX_RESUME_RETRY: int = 10
    ORDER_CONCURRENCY: int = 8

    # loops
    LISTENER_ENABLED: bool = True
    LISTENER_INTERVAL_SEC: float = 30.0
    COLLATERAL_PRICE_INTERVAL_SEC: float = 300.0

    # in-memory registries
    WALLET_GUARD_TTL_SEC: int = 24 * 60 * 60
    SIGNER_CACHE_TTL_SEC: int = 2 * 24 * 60 * 60
    SIGNER_CACHE_MAX_SIZE: int = 300

    # generic
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings(
        MONGODB_URI=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
        MONGODB_DB_NAME=os.getenv("MONGODB_DB_NAME", "order_executor_db"),
        RPC_URLS={
            1: _csv(os.getenv("RPC_URL_ETHEREUM"), ["https://ethereum-rpc.publicnode.com"]),
            43114: _csv(
                os.getenv("RPC_URL_AVALANCHE"),
                ["https://api.avax.network/ext/bc/C/rpc", "https://avalanche-c-chain-rpc.publicnode.com"],
            ),
            42161: _csv(
                os.getenv("RPC_URL_ARBITRUM"),
                ["https://arb1.arbitrum.io/rpc", "https://arbitrum-one-rpc.publicnode.com"],
            ),
            1399811149: _csv(os.getenv("RPC_URL_SOLANA"), ["https://solana.drpc.org"]),
        },
        AGGREGATOR_BASE_URL=os.getenv("AGGREGATOR_BASE_URL", "https://router.lfj.gg/v2/aggregator/routes"),
        EVM_AGGREGATORS=_csv(os.getenv("EVM_AGGREGATORS"), ["okx", "joe", "flytrade", "odos", "kyber"]),
        SOLANA_AGGREGATORS=_csv(os.getenv("SOLANA_AGGREGATORS"), ["okx", "jupiter"]),
        ORACLE_URL=os.getenv("ORACLE_URL", "https://graph.defined.fi/graphql"),
        ORACLE_API_KEY=os.getenv("ORACLE_API_KEY", ""),
        WALLET_KEY_PASSWORD=os.environ.get("WALLET_PRIVATE_KEY_SECURITY", ""),  # keep empty when missing
        WALLET_KEY_ALGORITHM=os.getenv("SECURITY_ALGORITHM", "aes-256-cbc"),
        EVM_ROUTE_TIMEOUT_SEC=float(os.getenv("EVM_ROUTE_TIMEOUT_SEC", 10)),
        SOLANA_ROUTE_TIMEOUT_SEC=float(os.getenv("SOLANA_ROUTE_TIMEOUT_SEC", 10)),
        HTTP_TIMEOUT_SEC=float(os.getenv("HTTP_TIMEOUT_SEC", 15)),
        ORDER_TRADE_FEE_BPS=int(os.getenv("ORDER_TRADE_FEE_BPS", 10)),
        ORDER_PRIORITY_FEE_BPS=int(os.getenv("ORDER_PRIORITY_FEE_BPS", 5)),
        ORDER_TRADE_FEE_EXEMPT_STATUS=_csv(os.getenv("ORDER_TRADE_FEE_EXEMPT_STATUS"), ["admin"]),
        EVM_TRADE_FEE_COLLECTOR=os.getenv(
            "EVM_TRADE_FEE_COLLECTOR", "0xfe7AB0137C85c9f05d03d69a35865277EA64DEba"
        ),
        SOLANA_TRADE_FEE_COLLECTOR=os.getenv(
            "SOLANA_TRADE_FEE_COLLECTOR", "BLvk55ch6uWM2j9YUX9pUfmfbuA8CWdXuDMZ3og3J4RN"
        ),
        ORDER_MAX_RETRY=int(os.getenv("ORDER_MAX_RETRY", 3)),
        ORDER_MAX_RESUME_RETRY=int(os.getenv("ORDER_MAX_RESUME_RETRY", 10)),
        ORDER_CONCURRENCY=int(os.getenv("ORDER_CONCURRENCY", 8)),
        LISTENER_ENABLED=_bool(os.getenv("LISTENER_ENABLED"), True),
        LISTENER_INTERVAL_SEC=float(os.getenv("LISTENER_INTERVAL_SEC", 30)),
        COLLATERAL_PRICE_INTERVAL_SEC=float(os.getenv("COLLATERAL_PRICE_INTERVAL_SEC", 300)),
        WALLET_GUARD_TTL_SEC=int(os.getenv("WALLET_GUARD_TTL_SEC", 24 * 60 * 60)),
        SIGNER_CACHE_TTL_SEC=int(os.getenv("SIGNER_CACHE_TTL_SEC", 2 * 24 * 60 * 60)),
        SIGNER_CACHE_MAX_SIZE=int(os.getenv("SIGNER_CACHE_MAX_SIZE", 300)),
        ENV=os.getenv("ENV", "dev"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )
