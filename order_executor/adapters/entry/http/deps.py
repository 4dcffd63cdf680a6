from fastapi import Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from ....core.repositories.order_repository import OrderRepository
from ....workers.order_supervisor import OrderSupervisor
from ...external.database.order_repository_mongodb import OrderRepositoryMongoDB


def get_db(request: Request) -> AsyncIOMotorDatabase:
    """
    Resolve the Mongo database from FastAPI app state.
    """
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise RuntimeError("Database is not initialized in app.state.db")
    return db


def get_supervisor(request: Request) -> OrderSupervisor:
    """
    Resolve the wired supervisor (use cases, registries) from FastAPI app state.
    """
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None or supervisor.open_order is None:
        raise RuntimeError("Order supervisor is not initialized in app.state.supervisor")
    return supervisor


def get_order_repository(db: AsyncIOMotorDatabase = Depends(get_db)) -> OrderRepository:
    return OrderRepositoryMongoDB(db)
