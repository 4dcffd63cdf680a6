import logging
import statistics
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from ....core.ports.condition_evaluator import ConditionEvaluator

# resolution -> (source resolution fetched from the oracle, number of source bars per bar)
RESOLUTION_CONFIG: Dict[str, Tuple[str, int]] = {
    "1": ("1", 1),
    "5": ("1", 5),
    "15": ("1", 15),
    "30": ("1", 30),
    "60": ("60", 1),
    "120": ("60", 2),
    "240": ("60", 4),
    "360": ("60", 6),
    "480": ("60", 8),
    "720": ("60", 12),
    "1440": ("60", 24),
}

DEFAULT_PERIODS = {"RSI": 14, "SMA": 9, "EMA": 9, "BollingerBands": 20, "Volume.Signal": 14}
MINIMUM_CANDLES = 30
EPSILON = 0.00001


def aggregate_candles(source: Dict[str, Any], base_minutes: int, multiplier: int) -> Dict[str, Any]:
    """
    Re-bucket OHLCV bars into `base_minutes * multiplier` bars aligned on epoch time.
    """
    if multiplier <= 1:
        return source
    if not source or not source.get("success") or not source.get("times"):
        return {"success": False, "times": []}

    bucket_ms = base_minutes * multiplier * 60 * 1000
    out: Dict[str, List] = {k: [] for k in ("opens", "highs", "lows", "closes", "volumes", "times")}
    current: Optional[int] = None
    for i, t in enumerate(source["times"]):
        start = (int(t) // bucket_ms) * bucket_ms
        if start != current:
            current = start
            out["times"].append(start)
            out["opens"].append(source["opens"][i])
            out["highs"].append(source["highs"][i])
            out["lows"].append(source["lows"][i])
            out["closes"].append(source["closes"][i])
            out["volumes"].append(source["volumes"][i] if i < len(source.get("volumes") or []) else 0.0)
            continue
        out["highs"][-1] = max(out["highs"][-1], source["highs"][i])
        out["lows"][-1] = min(out["lows"][-1], source["lows"][i])
        out["closes"][-1] = source["closes"][i]
        if i < len(source.get("volumes") or []):
            out["volumes"][-1] += source["volumes"][i]
    return {"success": True, **out}


def sma(values: List[float], period: int) -> Optional[float]:
    if len(values) < period:
        return None
    return sum(values[-period:]) / period


def ema(values: List[float], period: int) -> Optional[float]:
    if len(values) < period:
        return None
    k = 2 / (period + 1)
    current = sum(values[:period]) / period
    for v in values[period:]:
        current = v * k + current * (1 - k)
    return current


def rsi(values: List[float], period: int) -> Optional[float]:
    """Wilder's RSI of the last bar."""
    if len(values) <= period:
        return None
    gains, losses = 0.0, 0.0
    for prev, cur in zip(values[:period], values[1 : period + 1]):
        diff = cur - prev
        gains += max(diff, 0.0)
        losses += max(-diff, 0.0)
    avg_gain, avg_loss = gains / period, losses / period
    for prev, cur in zip(values[period:], values[period + 1 :]):
        diff = cur - prev
        avg_gain = (avg_gain * (period - 1) + max(diff, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-diff, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        same = actual.upper() == str(expected).upper()
        return same if operator == "EQUAL" else not same
    try:
        a, e = float(actual), float(expected)
    except (TypeError, ValueError):
        return False
    if operator == "GREATER_THAN":
        return a > e
    if operator == "LESS_THAN":
        return a < e
    if operator == "GREATER_THAN_OR_EQUAL":
        return a >= e
    if operator == "LESS_THAN_OR_EQUAL":
        return a <= e
    if operator == "EQUAL":
        return abs(a - e) < EPSILON
    if operator == "NOT_EQUAL":
        return abs(a - e) >= EPSILON
    return False


class TechnicalConditionEvaluator(ConditionEvaluator):
    """
    Evaluates an AND/OR tree of indicator comparisons against candles and the
    token snapshot.

    Group node:     {"operator": "AND"|"OR", "logics": [...]}
    Condition node: {"id": "RSI", "operator": "LESS_THAN", "threshold": 30, "period": 14, "resolution": "15"}

    Anything that cannot be computed (unknown indicator, missing candles,
    too little history) makes that condition false.
    """

    def __init__(self, cache_size: int = 500, logger: Optional[logging.Logger] = None):
        self._cache: "OrderedDict[str, Any]" = OrderedDict()
        self._cache_size = cache_size
        self._logger = logger or logging.getLogger(self.__class__.__name__)

    def evaluate(self, logic: Any, snapshot: Dict[str, Any], candles: Optional[Dict[str, Dict[str, Any]]]) -> bool:
        if not logic:
            return False
        operator = logic.get("operator")
        if operator in ("AND", "OR"):
            is_and = operator == "AND"
            for sub in logic.get("logics") or []:
                res = self.evaluate(sub, snapshot, candles)
                if is_and and not res:
                    return False
                if not is_and and res:
                    return True
            return is_and
        return self._condition(logic, snapshot or {}, candles or {})

    def _condition(self, node: Dict[str, Any], snapshot: Dict[str, Any], candles: Dict[str, Dict[str, Any]]) -> bool:
        resolution = str(node.get("resolution") or "1")
        base, multiplier = RESOLUTION_CONFIG.get(resolution, ("1", int(resolution) if resolution.isdigit() else 1))
        source = candles.get(base)
        if not source or not source.get("success"):
            return False
        series = aggregate_candles(source, int(base), multiplier)
        value = self._indicator(str(node.get("id") or ""), series, node.get("period"), snapshot)
        self._logger.debug("indicator %s@%s = %s", node.get("id"), resolution, value)
        return compare(value, node.get("operator") or "", node.get("threshold"))

    def _remember(self, key: str, value: Any) -> Any:
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return value

    def _indicator(self, name: str, series: Dict[str, Any], period: Any, snapshot: Dict[str, Any]) -> Any:
        if name == "Price":
            price = snapshot.get("priceUSD")
            return float(price) if price is not None else (series["closes"][-1] if series.get("closes") else None)
        if name == "Liquidity":
            return float(snapshot["liquidity"]) if snapshot.get("liquidity") is not None else None
        if name == "Holders":
            return int(snapshot["holders"]) if snapshot.get("holders") is not None else None

        closes: List[float] = series.get("closes") or []
        family = name.split(".")[0]
        p = int(period or DEFAULT_PERIODS.get(name) or DEFAULT_PERIODS.get(family) or 14)
        if len(closes) < max(p + 2, MINIMUM_CANDLES):
            return None

        key = f"{name}-{p}-{series['times'][-1]}-{len(closes)}"
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        if name == "RSI":
            value = rsi(closes, p)
        elif name == "SMA":
            value = sma(closes, p)
        elif name == "EMA":
            value = ema(closes, p)
        elif family == "BollingerBands":
            window = closes[-p:]
            middle = sum(window) / p
            band = 2 * statistics.pstdev(window)
            value = {"BollingerBands.Upper": middle + band, "BollingerBands.Lower": middle - band}.get(name, middle)
        elif name == "Volume.Signal":
            volumes = series.get("volumes") or []
            average = sum(volumes[-p - 1 : -1]) / p
            current = volumes[-1]
            value = "UP" if current > average * 1.5 else "DOWN" if current < average * 0.67 else "NEUTRAL"
        else:
            return None
        return self._remember(key, value)
