from __future__ import annotations
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Transaction
from ..helpers import now_ts, to_iso

Gated = Callable[[], AsyncContextManager[None]]


def _entry(r) -> Dict[str, Any]:
    codes = r["codes"] or ""
    return {
        "id": r["id"],
        "email": r["email"],
        "quantity": r["quantity"],
        "reference": r["reference"],
        "codes": [c for c in codes.split(",") if c],
        "timestamp": r["created_at"],
        "timestamp_iso": to_iso(r["created_at"]),
    }


class Ledger:
    """Append-only transaction log plus the per-reference redemption gate."""

    def __init__(
        self, *, db: AsyncSession, gated: Gated,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.db = db
        self.gated = gated
        self.clock = clock

    async def append(
        self, email: str, quantity: int, reference: str, codes: List[str]
    ) -> int:
        entry = Transaction(
            email=email,
            quantity=quantity,
            reference=reference,
            codes=",".join(codes),
            created_at=self.clock(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(entry)
                await self.db.flush()
        return int(entry.id)

    async def list_recent(self, limit: int = 200) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT id, email, quantity, reference, codes, created_at
                    FROM logs
                    ORDER BY created_at DESC, id DESC
                    LIMIT :lim
                """), {"lim": max(1, min(int(limit), 1000))})).mappings().all()
        return [_entry(r) for r in rows]

    async def find_by_reference(
        self, reference: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT id, email, quantity, reference, codes, created_at
                    FROM logs WHERE reference = :ref
                    ORDER BY id DESC LIMIT 1
                """), {"ref": reference})).mappings().first()
        return _entry(row) if row else None

    async def acquire_reference(self, reference: str) -> bool:
        # NX gate: True only for the first caller with this reference
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO reference_gates(reference, created_at)
                  VALUES(:ref, :now)
                  ON CONFLICT (reference) DO NOTHING
                  RETURNING reference
                """), {"ref": reference, "now": self.clock()})).first()
        return row is not None

    async def release_reference(self, reference: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM reference_gates WHERE reference = :ref"),
                    {"ref": reference},
                )
