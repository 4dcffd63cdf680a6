from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class ConditionEvaluator(ABC):
    """
    Pure predicate over a technical-logic tree (AND/OR of indicator comparisons).
    """

    @abstractmethod
    def evaluate(
        self,
        logic: Any,
        snapshot: Dict[str, Any],
        candles: Optional[Dict[str, Dict[str, Any]]],
    ) -> bool:
        raise NotImplementedError
