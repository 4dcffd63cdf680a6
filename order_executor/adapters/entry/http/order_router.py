import asyncio
import logging
from typing import Literal, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ....core.repositories.order_repository import OrderRepository
from .deps import get_order_repository, get_supervisor

router = APIRouter(prefix="/orders", tags=["orders"])

_logger = logging.getLogger("order_router")

# strong refs so scheduled executions are not garbage-collected mid-flight
_background: Set[asyncio.Task] = set()

Action = Literal["open", "close", "process"]


class OrderTriggerOutDTO(BaseModel):
    order_id: str
    action: Action
    scheduled: bool


class OrderStateOutDTO(BaseModel):
    order_id: str
    order_status: str
    order_type: str
    message: Optional[str] = None
    is_busy: bool
    is_active: bool
    phase: Optional[str] = None


def _schedule(coro, order_id: str, action: str) -> None:
    task = asyncio.create_task(coro)
    _background.add(task)

    def _done(t: asyncio.Task) -> None:
        _background.discard(t)
        if not t.cancelled() and t.exception() is not None:
            _logger.error("%s trigger for order %s failed: %s", action, order_id, t.exception())

    task.add_done_callback(_done)


@router.post("/{order_id}/{action}", response_model=OrderTriggerOutDTO, status_code=202)
async def trigger_order(order_id: str, action: Action, supervisor=Depends(get_supervisor)):
    """
    Schedule open / close / process for one order and return immediately.
    Duplicate triggers are harmless: the atomic claim lets only one run.
    """
    use_case = {
        "open": supervisor.open_order,
        "close": supervisor.close_order,
        "process": supervisor.process_order,
    }[action]
    _schedule(use_case.execute(order_id), order_id, action)
    return OrderTriggerOutDTO(order_id=order_id, action=action, scheduled=True)


@router.get("/{order_id}", response_model=OrderStateOutDTO)
async def get_order_state(order_id: str, orders: OrderRepository = Depends(get_order_repository)):
    """
    Current lifecycle state of an order (status, reason code, checkpoint phase).
    """
    order = await orders.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderStateOutDTO(
        order_id=str(order.id),
        order_status=order.order_status.value,
        order_type=order.order_type.value,
        message=order.message,
        is_busy=order.is_busy,
        is_active=order.is_active,
        phase=order.checkpoint.phase if order.checkpoint else None,
    )
