"""Pytest fixtures shared by the order executor test suite."""
import copy
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from order_executor.core.domain.constants import CHAIN_CONFIG, NATIVE_TOKEN_ADDRESS, Chains
from order_executor.core.domain.entities.activity_entity import ActivityEntity
from order_executor.core.domain.entities.execution_entity import SwapResult, TransferResult, TxInfo
from order_executor.core.domain.entities.order_entity import OrderEntity, OrderUpdate
from order_executor.core.domain.enums.order_enums import OrderMessage, OrderStatus, OrderType
from order_executor.core.errors.exceptions import SignerError, TxPendingError
from order_executor.core.ports.chain_adapter import ChainAdapter, ChainAdapterProvider
from order_executor.core.ports.price_oracle import PriceOracle
from order_executor.core.ports.signer_provider import SignerProvider
from order_executor.core.repositories.activity_repository import ActivityRepository
from order_executor.core.repositories.order_repository import OrderRepository
from order_executor.core.services.position_service import PositionService
from order_executor.core.services.price_cache import PriceCache
from order_executor.core.services.trade_fee_service import TradeFeeService
from order_executor.core.services.wallet_guard import WalletGuardRegistry

P = 10**30  # one USD in 30-decimal fixed point

CHAIN = Chains.AVALANCHE
WALLET = "0x" + "ab" * 20
USDC = "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E"
TOKEN = "0x" + "cd" * 20
EVM_COLLECTOR = "0x" + "fe" * 20


# =============================================================================
# In-memory repositories
# =============================================================================


def _set_path(doc: Dict, path: str, value: Any) -> None:
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        if node.get(part) is None:
            node[part] = {}
        node = node[part]
    node[parts[-1]] = value


class InMemoryOrderRepository(OrderRepository):
    """Mirrors the Mongo repository's matching rules on plain dicts."""

    def __init__(self):
        self.docs: Dict[str, Dict] = {}
        self.wallets: Dict[str, Dict] = {}
        self.users: Dict[str, Dict] = {}
        self.updates: List[tuple] = []

    def add(self, doc: Dict) -> None:
        self.docs[doc["_id"]] = OrderEntity.model_validate(doc).model_dump(by_alias=True, mode="json")

    async def ensure_indexes(self) -> None:
        return None

    def _populate(self, doc: Optional[Dict]) -> Optional[OrderEntity]:
        if doc is None:
            return None
        data = copy.deepcopy(doc)
        data["wallet_info"] = self.wallets.get(doc.get("wallet"))
        data["user_info"] = self.users.get(doc.get("user"))
        return OrderEntity.model_validate(data)

    async def get(self, order_id: str) -> Optional[OrderEntity]:
        return self._populate(self.docs.get(order_id))

    def _claim(self, order_id: str, statuses: List[str], max_retry: int, message: OrderMessage,
               need_checkpoint: bool = False) -> Optional[OrderEntity]:
        doc = self.docs.get(order_id)
        if doc is None or doc["order_status"] not in statuses or doc["is_busy"]:
            return None
        if doc["additional"].get("retry", 0) >= max_retry:
            return None
        if need_checkpoint and doc["additional"].get("in_processing") is None:
            return None
        doc["order_status"] = OrderStatus.PROCESSING.value
        doc["is_busy"] = True
        doc["message"] = message.value
        doc["additional"]["retry"] = doc["additional"].get("retry", 0) + 1
        return self._populate(doc)

    async def claim_for_open(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return self._claim(order_id, [OrderStatus.PENDING.value], max_retry, OrderMessage.PROCESSING_ORDER)

    async def claim_for_close(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return self._claim(
            order_id, [OrderStatus.PENDING.value, OrderStatus.OPENED.value], max_retry, OrderMessage.PROCESSING_ORDER
        )

    async def claim_for_process(self, order_id: str, max_retry: int) -> Optional[OrderEntity]:
        return self._claim(
            order_id, [OrderStatus.PROCESSING.value], max_retry, OrderMessage.RESUMING_ORDER, need_checkpoint=True
        )

    async def update(self, order_id: str, update: OrderUpdate) -> None:
        self.updates.append((order_id, update))
        doc = self.docs[order_id]
        for path, value in update.to_set_document().items():
            _set_path(doc, path, value)

    async def find_accumulated_siblings(self, order: OrderEntity) -> List[OrderEntity]:
        return [
            OrderEntity.model_validate(copy.deepcopy(d))
            for d in self.docs.values()
            if d["_id"] != order.id
            and d["name"] == order.name
            and d["strategy"] == order.strategy
            and d["order_status"] == OrderStatus.OPENED.value
            and d["is_active"]
            and not d["is_busy"]
            and d["order_type"] == OrderType.SELL.value
        ]

    async def group_active_orders(self) -> List[Dict]:
        groups: Dict[tuple, Dict] = {}
        for d in self.docs.values():
            if not d["is_active"] or d["is_busy"]:
                continue
            if d["order_status"] not in ("PENDING", "OPENED", "PROCESSING"):
                continue
            order = OrderEntity.model_validate(copy.deepcopy(d))
            key = (order.order_asset.order_token.address, order.chain_id)
            group = groups.setdefault(
                key, {"token": key[0], "chain_id": key[1], "has_technical": False, "orders": []}
            )
            group["orders"].append(order)
            group["has_technical"] = group["has_technical"] or order.is_technical
        return list(groups.values())


class InMemoryActivityRepository(ActivityRepository):

    def __init__(self):
        self.items: Dict[str, ActivityEntity] = {}
        self.fail_inserts = False

    async def ensure_indexes(self) -> None:
        return None

    async def insert(self, activity: ActivityEntity) -> str:
        if self.fail_inserts:
            raise RuntimeError("activity store unavailable")
        activity_id = f"act-{len(self.items) + 1}"
        self.items[activity_id] = activity.model_copy(update={"id": activity_id})
        return activity_id

    async def get(self, activity_id: str) -> Optional[ActivityEntity]:
        return self.items.get(activity_id)

    async def update_usd(self, activity_id, *, pay_in_usd=None, receive_in_usd=None, fee_in_usd=None) -> None:
        item = self.items[activity_id]
        if pay_in_usd is not None and item.pay_token is not None:
            item.pay_token.amount_in_usd = pay_in_usd
        if receive_in_usd is not None and item.receive_token is not None:
            item.receive_token.amount_in_usd = receive_in_usd
        if fee_in_usd is not None:
            item.tx_fee.fee_in_usd = fee_in_usd

    def of_type(self, activity_type) -> List[ActivityEntity]:
        return [a for a in self.items.values() if a.type == activity_type]


# =============================================================================
# Chain / signer / oracle fakes
# =============================================================================


class FakeChainAdapter(ChainAdapter):
    """Scripted adapter: balances by token, one canned swap result, recorded calls."""

    def __init__(self, chain_id: int, balances: Optional[Dict[str, int]] = None, network_fee: int = 1_000):
        self.chain_id = chain_id
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.network_fee = network_fee
        self.swap_result = SwapResult.ok("0xswap", 0, 0)
        self.tx_info = TxInfo()
        self.tx_info_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.transfer_pending = False
        self.confirm_error: Optional[Exception] = None
        self.confirms: List[str] = []
        self.broadcasts: List[str] = []
        self.swaps: List[tuple] = []
        self.transfers: List[tuple] = []
        self.pending_during_swap: List[int] = []
        self.guard = None

    def signer_address(self, signer: Any) -> str:
        return WALLET

    async def get_balance(self, address: str, token: str) -> int:
        return self.balances.get(token.lower(), 0)

    async def estimate_network_fee(self) -> int:
        return self.network_fee

    async def swap(self, token_in, token_out, amount_in, slippage_bps, signer, on_broadcast=None) -> SwapResult:
        self.swaps.append((token_in, token_out, amount_in, slippage_bps))
        if self.guard is not None:
            self.pending_during_swap.append(self.guard.pending(self.chain_id, token_in))
        if on_broadcast is not None and self.swap_result.signature:
            self.broadcasts.append(self.swap_result.signature)
            await on_broadcast(self.swap_result.signature)
        return self.swap_result

    async def transfer(self, token, amount, to, signer, on_broadcast=None) -> TransferResult:
        if self.transfer_error is not None:
            raise self.transfer_error
        self.transfers.append((token, amount, to))
        signature = f"0xfee{len(self.transfers)}"
        if on_broadcast is not None:
            await on_broadcast(signature)
        if self.transfer_pending:
            raise TxPendingError(signature)
        return TransferResult(signature=signature, fee=500)

    async def confirm_transfer(self, signature) -> TransferResult:
        self.confirms.append(signature)
        if self.confirm_error is not None:
            raise self.confirm_error
        return TransferResult(signature=signature, fee=500)

    async def get_tx_info(self, signature, receiver, token_out) -> TxInfo:
        if self.tx_info_error is not None:
            raise self.tx_info_error
        return self.tx_info


class FakeAdapterProvider(ChainAdapterProvider):

    def __init__(self, *adapters: ChainAdapter):
        self.adapters = {a.chain_id: a for a in adapters}

    def get(self, chain_id: int) -> ChainAdapter:
        return self.adapters[chain_id]


class FakeSignerProvider(SignerProvider):

    def __init__(self):
        self.fail = False
        self.signer = SimpleNamespace(address=WALLET)

    def get_signer(self, encrypted_key, network):
        if self.fail:
            raise SignerError("Wallet key could not be decrypted")
        return self.signer


class FakeOracle(PriceOracle):

    def __init__(self, prices: Optional[Dict[str, str]] = None):
        self.prices = {k.lower(): v for k, v in (prices or {}).items()}
        self.snapshots: List[Dict] = []
        self.candles: Dict[str, Dict] = {}
        self.price_calls = 0

    async def token_prices(self, tokens):
        self.price_calls += 1
        return [
            {"address": t["address"], "networkId": t["networkId"], "priceUsd": self.prices[t["address"].lower()]}
            for t in tokens
            if t["address"].lower() in self.prices
        ]

    async def filter_tokens(self, token_keys, limit=200):
        return list(self.snapshots)

    async def multi_timeframe_candles(self, pair_address, chain_id, quote_token, resolutions, created_at, limit=500):
        return dict(self.candles)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def order_factory():
    """Build order documents on Avalanche paying USDC for TOKEN."""

    def _make(order_id: str = "order-1", **overrides) -> Dict:
        doc = {
            "_id": order_id,
            "user": "user-1",
            "wallet": "wallet-1",
            "name": "avax-token",
            "strategy": "",
            "chain_id": CHAIN,
            "priority": 1,
            "slippage": 500,
            "order_asset": {
                "collateral_token": {"address": USDC, "decimals": 6, "symbol": "USDC"},
                "order_token": {"address": TOKEN, "decimals": 18, "symbol": "TKN"},
                "output_token": {"address": USDC, "decimals": 6, "symbol": "USDC"},
            },
            "amount": {"order_size": 100_000_000, "token_amount": 0},
            "entry": {"price_logic": {"id": "price", "threshold": str(25 * P)}},
            "exit": {"take_profit": {"take_profit_percentage": 1000}},
            "order_status": "PENDING",
            "order_type": "BUY",
            "is_busy": False,
            "is_active": True,
            "additional": {"retry": 0},
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(doc.get(key), dict):
                doc[key] = {**doc[key], **value}
            else:
                doc[key] = value
        return doc

    return _make


@pytest.fixture
def harness():
    """Use-case wiring over in-memory stores and a scripted Avalanche adapter."""
    orders = InMemoryOrderRepository()
    orders.wallets["wallet-1"] = {"_id": "wallet-1", "address": WALLET, "encrypted_wallet_key": "enc", "network": "EVM"}
    orders.users["user-1"] = {"_id": "user-1", "status": "user"}
    activities = InMemoryActivityRepository()

    adapter = FakeChainAdapter(
        CHAIN,
        balances={NATIVE_TOKEN_ADDRESS: 10**18, USDC: 1_000_000_000, TOKEN: 10 * 10**18},
    )
    provider = FakeAdapterProvider(adapter)
    guards = WalletGuardRegistry(provider.balance_of, retry=1, retry_delay_sec=0)
    adapter.guard = guards.get(WALLET)

    oracle = FakeOracle()
    price_cache = PriceCache(oracle)
    price_cache.set(CHAIN, NATIVE_TOKEN_ADDRESS, 20 * P)
    price_cache.set(CHAIN, USDC, 1 * P)

    fees = TradeFeeService(provider, activities, price_cache, evm_collector=EVM_COLLECTOR)
    positions = PositionService(orders)
    signers = FakeSignerProvider()

    h = SimpleNamespace(
        orders=orders,
        activities=activities,
        adapter=adapter,
        provider=provider,
        guards=guards,
        oracle=oracle,
        price_cache=price_cache,
        fees=fees,
        positions=positions,
        signers=signers,
        native_address=CHAIN_CONFIG[CHAIN].native.address,
    )

    def build(use_case_cls, **kwargs):
        return use_case_cls(
            orders, activities, provider, guards, signers, price_cache, fees, positions, **kwargs
        )

    h.build = build
    return h


@pytest.fixture
def snapshot():
    """Market snapshot as returned by the oracle's filterTokens."""
    return {
        "priceUSD": "20",
        "liquidity": "150000",
        "holders": 1200,
        "quoteToken": "token1",
        "createdAt": 1_700_000_000,
        "pair": {"address": "0x" + "99" * 20},
        "token": {"id": f"{TOKEN}:{CHAIN}", "address": TOKEN, "networkId": CHAIN},
    }
