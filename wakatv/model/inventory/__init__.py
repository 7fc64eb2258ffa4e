# model/inventory/__init__.py
import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._sql import InventoryStore as SqlInventoryStore
from ._redis import InventoryStore as RedisInventoryStore

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("INVENTORY_BACKEND", "sql").lower()  # 'sql' | 'redis'


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Gated = None,
              skip_locked: bool = False,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "sql":
        if db is None:
            raise RuntimeError("InventoryStore(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("InventoryStore(sql) requires gated=Gated")
        return SqlInventoryStore(db=db, gated=gated, skip_locked=skip_locked)
    if backend == "redis":
        if r is None:
            raise RuntimeError("InventoryStore(redis) requires r=redis.Redis")
        return RedisInventoryStore(r=r)
    raise RuntimeError(f"unknown INVENTORY_BACKEND: {backend}")


__all__ = [
    "SqlInventoryStore", "RedisInventoryStore", "new_store", "BACKEND",
]
