from __future__ import annotations
from typing import Any, Callable, AsyncContextManager, Dict, Iterable, List

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import InsufficientInventory
from ...helpers import now_ts, to_iso

Gated = Callable[[], AsyncContextManager[None]]


# ------------------------------------------------------------------------------
# Claim: one conditional UPDATE, evaluated by the database.
#   The inner SELECT picks n unused ids, the outer WHERE re-checks `used` so a
#   row committed by a concurrent claim in between is never taken twice.
#   On postgres, SKIP LOCKED lets concurrent claims pick disjoint rows instead
#   of queueing on the same ones. sqlite serializes writers anyway.
# ------------------------------------------------------------------------------
SQL_CLAIM = r"""
UPDATE codes
SET used = TRUE, used_by = :who, used_at = :now
WHERE used = FALSE
  AND id IN (
    SELECT id FROM codes
    WHERE used = FALSE
    ORDER BY id
    LIMIT :n
    {lock}
  )
RETURNING code
"""

SQL_RELEASE = text(r"""
UPDATE codes
SET used = FALSE, used_by = NULL, used_at = NULL
WHERE used = TRUE AND code IN :codes
""").bindparams(bindparam("codes", expanding=True))

SQL_INSERT_IGNORE = text(r"""
INSERT INTO codes (code, used, created_at)
VALUES (:code, FALSE, :now)
ON CONFLICT (code) DO NOTHING
""")

SQL_DELETE = text(
    "DELETE FROM codes WHERE id IN :ids"
).bindparams(bindparam("ids", expanding=True))


def _row_to_dict(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "code": r["code"],
        "used": bool(r["used"]),
        "used_by": r["used_by"],
        "used_at": r["used_at"],
        "used_at_iso": to_iso(r["used_at"]),
        "created_at": r["created_at"],
    }


class InventoryStore:
    def __init__(
        self, *, db: AsyncSession, gated: Gated, skip_locked: bool = False,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.db = db
        self.gated = gated
        self.clock = clock
        self._sql_claim = text(SQL_CLAIM.format(
            lock="FOR UPDATE SKIP LOCKED" if skip_locked else ""
        ))

    async def claim(self, n: int, customer: str) -> List[str]:
        """
        Mark exactly n unused codes as used by `customer` and return them.
        Raises InsufficientInventory (and commits nothing) if fewer than n
        could be claimed.
        """
        if not isinstance(n, int) or isinstance(n, bool) or n <= 0:
            raise ValueError("n must be a positive integer")

        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    self._sql_claim,
                    {"who": customer, "now": self.clock(), "n": n},
                )).all()
                if len(rows) < n:
                    # raising inside begin() rolls the partial claim back
                    raise InsufficientInventory(n, len(rows))
        return [r[0] for r in rows]

    async def release(self, codes: Iterable[str]) -> int:
        codes = list(codes)
        if not codes:
            return 0
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(SQL_RELEASE, {"codes": codes})
        return int(res.rowcount or 0)

    async def bulk_upsert(self, code_strings: Iterable[str]) -> int:
        seen = set()
        fresh: List[str] = []
        for c in code_strings:
            c = (c or "").strip()
            if c and c not in seen:
                seen.add(c)
                fresh.append(c)
        if not fresh:
            return 0

        inserted = 0
        now = self.clock()
        async with self.gated():
            async with self.db.begin():
                for c in fresh:
                    res = await self.db.execute(
                        SQL_INSERT_IGNORE, {"code": c, "now": now}
                    )
                    inserted += int(res.rowcount or 0)
        return inserted

    async def delete(self, ids: Iterable[int]) -> int:
        ids = [int(i) for i in ids]
        if not ids:
            return 0
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(SQL_DELETE, {"ids": ids})
        return int(res.rowcount or 0)

    async def _list(self, only_unused: bool) -> List[Dict[str, Any]]:
        where = "WHERE used = FALSE" if only_unused else ""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                    SELECT id, code, used, used_by, used_at, created_at
                    FROM codes {where}
                    ORDER BY id DESC
                """))).mappings().all()
        return [_row_to_dict(r) for r in rows]

    async def list_unused(self) -> List[Dict[str, Any]]:
        return await self._list(only_unused=True)

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self._list(only_unused=False)

    async def stats(self) -> Dict[str, int]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT COUNT(*) AS total,
                           COALESCE(SUM(CASE WHEN used THEN 1 ELSE 0 END), 0)
                               AS used
                    FROM codes
                """))).mappings().first()
        total = int(row["total"])
        used = int(row["used"])
        return {"total": total, "used": used, "unused": total - used}
