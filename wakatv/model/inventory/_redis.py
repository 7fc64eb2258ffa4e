from __future__ import annotations
from typing import Any, Callable, Dict, Iterable, List, Optional
import redis.asyncio as redis

from ...errors import InsufficientInventory
from ...helpers import now_ts, to_iso


# ---- keys
UNUSED_SET = "codes:unused"
ALL_INDEX = "codes:all"  # zset code -> created_at
CODE_PREFIX = "code:"


def k_code(code: str) -> str: return f"{CODE_PREFIX}{code}"


# Every mutation is a Lua script, so the check and the write run as one
# atomic step on the redis server.

# KEYS[1]=unused set; ARGV: n, who, now, prefix
# Returns the claimed codes, or {} when fewer than n are unused.
LUA_CLAIM = r"""
local n = tonumber(ARGV[1])
if redis.call('SCARD', KEYS[1]) < n then
  return {}
end
local popped = redis.call('SPOP', KEYS[1], n)
for _, c in ipairs(popped) do
  redis.call('HSET', ARGV[4] .. c,
             'used', '1', 'used_by', ARGV[2], 'used_at', ARGV[3])
end
return popped
"""

# KEYS[1]=unused set; ARGV: prefix, codes...
LUA_RELEASE = r"""
local released = 0
for i = 2, #ARGV do
  local key = ARGV[1] .. ARGV[i]
  if redis.call('HGET', key, 'used') == '1' then
    redis.call('HSET', key, 'used', '0')
    redis.call('HDEL', key, 'used_by', 'used_at')
    redis.call('SADD', KEYS[1], ARGV[i])
    released = released + 1
  end
end
return released
"""

# KEYS[1]=unused set, KEYS[2]=all index; ARGV: prefix, now, codes...
LUA_INSERT_IGNORE = r"""
local inserted = 0
for i = 3, #ARGV do
  local key = ARGV[1] .. ARGV[i]
  if redis.call('EXISTS', key) == 0 then
    redis.call('HSET', key, 'code', ARGV[i], 'used', '0',
               'created_at', ARGV[2])
    redis.call('SADD', KEYS[1], ARGV[i])
    redis.call('ZADD', KEYS[2], ARGV[2], ARGV[i])
    inserted = inserted + 1
  end
end
return inserted
"""


def _float_or_none(v: Optional[str]) -> Optional[float]:
    if v in (None, ""):
        return None
    try:
        return float(v)
    except ValueError:
        return None


class InventoryStore:
    """
    Redis-backed inventory. The code string doubles as its identifier, so
    `delete()` takes code strings.
    """

    def __init__(
        self, r: redis.Redis, clock: Callable[[], float] = now_ts
    ) -> None:
        self.r = r
        self.clock = clock
        self._claim = r.register_script(LUA_CLAIM)
        self._release = r.register_script(LUA_RELEASE)
        self._insert = r.register_script(LUA_INSERT_IGNORE)

    async def claim(self, n: int, customer: str) -> List[str]:
        if not isinstance(n, int) or isinstance(n, bool) or n <= 0:
            raise ValueError("n must be a positive integer")
        popped = await self._claim(
            keys=[UNUSED_SET],
            args=[n, customer, repr(self.clock()), CODE_PREFIX],
        )
        if not popped:
            raise InsufficientInventory(n, await self.r.scard(UNUSED_SET))
        return list(popped)

    async def release(self, codes: Iterable[str]) -> int:
        codes = list(codes)
        if not codes:
            return 0
        released = await self._release(
            keys=[UNUSED_SET], args=[CODE_PREFIX, *codes]
        )
        return int(released)

    async def bulk_upsert(self, code_strings: Iterable[str]) -> int:
        fresh = list(dict.fromkeys(
            c.strip() for c in code_strings if c and c.strip()
        ))
        if not fresh:
            return 0
        inserted = await self._insert(
            keys=[UNUSED_SET, ALL_INDEX],
            args=[CODE_PREFIX, repr(self.clock()), *fresh],
        )
        return int(inserted)

    async def delete(self, ids: Iterable[str]) -> int:
        codes = [str(c) for c in ids]
        if not codes:
            return 0
        pipe = self.r.pipeline(transaction=True)
        for c in codes:
            pipe.delete(k_code(c))
            pipe.srem(UNUSED_SET, c)
            pipe.zrem(ALL_INDEX, c)
        res = await pipe.execute()
        # every third reply is the DEL count
        return sum(int(x) for x in res[0::3])

    async def _list(self, only_unused: bool) -> List[Dict[str, Any]]:
        codes = await self.r.zrevrange(ALL_INDEX, 0, -1)
        # Pipeline to fetch all code hashes
        pipe = self.r.pipeline()
        for c in codes:
            pipe.hgetall(k_code(c))
        rows = await pipe.execute()

        items = []
        for c, h in zip(codes, rows):
            if not h:
                continue
            used = h.get("used") == "1"
            if only_unused and used:
                continue
            used_at = _float_or_none(h.get("used_at"))
            items.append({
                "id": c,
                "code": c,
                "used": used,
                "used_by": h.get("used_by"),
                "used_at": used_at,
                "used_at_iso": to_iso(used_at),
                "created_at": _float_or_none(h.get("created_at")),
            })
        return items

    async def list_unused(self) -> List[Dict[str, Any]]:
        return await self._list(only_unused=True)

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self._list(only_unused=False)

    async def stats(self) -> Dict[str, int]:
        pipe = self.r.pipeline()
        pipe.zcard(ALL_INDEX)
        pipe.scard(UNUSED_SET)
        total, unused = await pipe.execute()
        return {
            "total": int(total),
            "used": int(total) - int(unused),
            "unused": int(unused),
        }
