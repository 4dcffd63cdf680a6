import asyncio
import contextlib
import logging

from motor.motor_asyncio import AsyncIOMotorClient

from ..adapters.external.aggregator.aggregator_http_client import AggregatorHttpClient
from ..adapters.external.analysis.technical_condition_evaluator import TechnicalConditionEvaluator
from ..adapters.external.chain.chain_adapter_registry import ChainAdapterRegistry
from ..adapters.external.chain.evm_chain_adapter import EvmChainAdapter
from ..adapters.external.chain.nonce_tracker import NonceTracker
from ..adapters.external.chain.solana_chain_adapter import SolanaChainAdapter
from ..adapters.external.database.activity_repository_mongodb import ActivityRepositoryMongoDB
from ..adapters.external.database.order_repository_mongodb import OrderRepositoryMongoDB
from ..adapters.external.oracle.codex_oracle_client import CodexOracleClient
from ..adapters.external.signer.encrypted_signer_provider import EncryptedSignerProvider
from ..config import Settings, get_settings
from ..core.domain.constants import CHAIN_CONFIG, is_solana
from ..core.services.position_service import PositionService
from ..core.services.price_cache import PriceCache
from ..core.services.route_aggregator import RouteAggregator
from ..core.services.trade_fee_service import TradeFeeService
from ..core.services.wallet_guard import WalletGuardRegistry
from ..core.usecases.close_open_order_use_case import CloseOpenOrderUseCase
from ..core.usecases.evaluate_active_orders_use_case import EvaluateActiveOrdersUseCase
from ..core.usecases.open_spot_order_use_case import OpenSpotOrderUseCase
from ..core.usecases.process_order_use_case import ProcessOrderUseCase


class OrderSupervisor:
    """
    Composition root of the order executor process.

    Responsibilities:
    - Connect to Mongo, ensure indexes.
    - Build chain adapters, registries and caches once, and inject them.
    - Wire the open / close / process use cases (also used by the HTTP triggers).
    - Run the background loops: order listener, collateral price refresh,
      wallet-guard eviction.
    """

    def __init__(self, settings: Settings | None = None):
        self._logger = logging.getLogger(self.__class__.__name__)
        self._settings = settings
        self._mongo_client: AsyncIOMotorClient | None = None
        self._db = None

        self.adapters: ChainAdapterRegistry | None = None
        self.open_order: OpenSpotOrderUseCase | None = None
        self.close_order: CloseOpenOrderUseCase | None = None
        self.process_order: ProcessOrderUseCase | None = None
        self.listener: EvaluateActiveOrdersUseCase | None = None
        self.price_cache: PriceCache | None = None
        self.wallet_guards: WalletGuardRegistry | None = None

        self._tasks: list[asyncio.Task] = []

    @property
    def db(self):
        """Expose the AsyncIOMotorDatabase instance after start()."""
        return self._db

    def _build_adapters(self, s: Settings) -> ChainAdapterRegistry:
        quoter = AggregatorHttpClient(s.AGGREGATOR_BASE_URL, timeout_sec=s.HTTP_TIMEOUT_SEC)
        evm_routes = RouteAggregator(quoter, s.EVM_AGGREGATORS, timeout_sec=s.EVM_ROUTE_TIMEOUT_SEC)
        solana_routes = RouteAggregator(quoter, s.SOLANA_AGGREGATORS, timeout_sec=s.SOLANA_ROUTE_TIMEOUT_SEC)
        nonces = NonceTracker(ttl_sec=s.SIGNER_CACHE_TTL_SEC, max_size=s.SIGNER_CACHE_MAX_SIZE)

        registry = ChainAdapterRegistry()
        for chain_id, urls in s.RPC_URLS.items():
            if chain_id not in CHAIN_CONFIG or not urls:
                self._logger.warning("skipping chain %s: no config or RPC url", chain_id)
                continue
            if is_solana(chain_id):
                registry.register(SolanaChainAdapter(urls[0], solana_routes))
            else:
                registry.register(EvmChainAdapter(chain_id, urls[0], evm_routes, nonces))
        return registry

    async def start(self):
        """
        Create connections, ensure indexes, wire use cases and start the loops.
        """
        s = self._settings or get_settings()

        # Mongo
        self._mongo_client = AsyncIOMotorClient(s.MONGODB_URI)
        self._db = self._mongo_client[s.MONGODB_DB_NAME]

        order_repo = OrderRepositoryMongoDB(self._db)
        activity_repo = ActivityRepositoryMongoDB(self._db)
        await order_repo.ensure_indexes()
        await activity_repo.ensure_indexes()

        # chains + shared in-memory registries
        self.adapters = self._build_adapters(s)
        self.wallet_guards = WalletGuardRegistry(self.adapters.balance_of, ttl_sec=s.WALLET_GUARD_TTL_SEC)

        oracle = CodexOracleClient(s.ORACLE_URL, s.ORACLE_API_KEY, timeout_sec=s.HTTP_TIMEOUT_SEC)
        self.price_cache = PriceCache(oracle)

        trade_fees = TradeFeeService(
            self.adapters,
            activity_repo,
            self.price_cache,
            trade_fee_bps=s.ORDER_TRADE_FEE_BPS,
            priority_fee_bps=s.ORDER_PRIORITY_FEE_BPS,
            exempt_statuses=s.ORDER_TRADE_FEE_EXEMPT_STATUS,
            evm_collector=s.EVM_TRADE_FEE_COLLECTOR,
            solana_collector=s.SOLANA_TRADE_FEE_COLLECTOR,
        )
        deps = dict(
            order_repo=order_repo,
            activity_repo=activity_repo,
            adapters=self.adapters,
            wallet_guards=self.wallet_guards,
            signer_provider=EncryptedSignerProvider(s.WALLET_KEY_PASSWORD, s.WALLET_KEY_ALGORITHM),
            price_cache=self.price_cache,
            trade_fee_service=trade_fees,
            position_service=PositionService(order_repo),
            max_retry=s.ORDER_MAX_RETRY,
            max_resume_retry=s.ORDER_MAX_RESUME_RETRY,
        )
        self.open_order = OpenSpotOrderUseCase(**deps)
        self.close_order = CloseOpenOrderUseCase(**deps)
        self.process_order = ProcessOrderUseCase(**deps)

        self.listener = EvaluateActiveOrdersUseCase(
            order_repo=order_repo,
            oracle=oracle,
            condition_evaluator=TechnicalConditionEvaluator(),
            open_order=self.open_order,
            close_order=self.close_order,
            process_order=self.process_order,
            price_cache=self.price_cache,
            concurrency=s.ORDER_CONCURRENCY,
        )

        async def _price_loop():
            """
            Keep collateral prices warm; first pass runs before the listener needs them.
            """
            while True:
                try:
                    updated = await self.price_cache.refresh()
                    self._logger.info("collateral prices refreshed (%s)", updated)
                except Exception as exc:
                    self._logger.exception("collateral price loop error: %s", exc)
                await asyncio.sleep(s.COLLATERAL_PRICE_INTERVAL_SEC)

        async def _listener_loop():
            while True:
                try:
                    await self.listener.execute_once()
                except Exception as exc:
                    self._logger.exception("order listener loop error: %s", exc)
                await asyncio.sleep(s.LISTENER_INTERVAL_SEC)

        async def _guard_eviction_loop():
            while True:
                try:
                    evicted = self.wallet_guards.evict_idle()
                    if evicted:
                        self._logger.info("evicted %s idle wallet guards", evicted)
                except Exception as exc:
                    self._logger.exception("wallet guard eviction error: %s", exc)
                await asyncio.sleep(max(60.0, s.WALLET_GUARD_TTL_SEC / 24))

        self._tasks.append(asyncio.create_task(_price_loop()))
        self._tasks.append(asyncio.create_task(_guard_eviction_loop()))
        if s.LISTENER_ENABLED:
            self._tasks.append(asyncio.create_task(_listener_loop()))
        self._logger.info("order supervisor started (chains=%s, listener=%s)", self.adapters.chain_ids(), s.LISTENER_ENABLED)

    async def stop(self):
        """
        Gracefully stop resources.
        """
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

        if self.adapters:
            with contextlib.suppress(Exception):
                await self.adapters.close()

        if self._mongo_client:
            self._mongo_client.close()
