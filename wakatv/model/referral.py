from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, AsyncContextManager, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..codes import CodeGenerator
from ..errors import PersistenceFailure
from ..helpers import now_ts, normalize_code

Gated = Callable[[], AsyncContextManager[None]]

MAX_CODE_ATTEMPTS = 20


@dataclass
class ReferralAccount:
    email: str
    referral_code: str
    referred_count: int = 0
    rewards_earned: int = 0
    created_at: float = 0.0

    @classmethod
    def from_row(cls, r) -> "ReferralAccount":
        return cls(
            email=r["email"],
            referral_code=r["referral_code"],
            referred_count=int(r["referred_count"]),
            rewards_earned=int(r["rewards_earned"]),
            created_at=float(r["created_at"]),
        )


@dataclass
class ReferralCredit:
    referrer_email: str
    referred_count: int


SQL_ACCOUNT_BY_EMAIL = text("""
    SELECT email, referral_code, referred_count, rewards_earned, created_at
    FROM referral_accounts WHERE email = :email
""")

SQL_ACCOUNT_BY_CODE = text("""
    SELECT email, referral_code, referred_count, rewards_earned, created_at
    FROM referral_accounts WHERE referral_code = :code
""")


class ReferralLedger:
    def __init__(
        self, *, db: AsyncSession, gated: Gated,
        generator: Optional[CodeGenerator] = None,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self.db = db
        self.gated = gated
        self.generator = generator or CodeGenerator()
        self.clock = clock

    async def find(self, email: str) -> Optional[ReferralAccount]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    SQL_ACCOUNT_BY_EMAIL, {"email": email}
                )).mappings().first()
        return ReferralAccount.from_row(row) if row else None

    async def find_by_code(self, code: str) -> Optional[ReferralAccount]:
        code = normalize_code(code)
        if not code:
            return None
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    SQL_ACCOUNT_BY_CODE, {"code": code}
                )).mappings().first()
        return ReferralAccount.from_row(row) if row else None

    async def find_or_create(self, email: str) -> ReferralAccount:
        existing = await self.find(email)
        if existing is not None:
            return existing

        for _ in range(MAX_CODE_ATTEMPTS):
            code = self.generator.next()
            try:
                async with self.gated():
                    async with self.db.begin():
                        taken = (await self.db.execute(
                            text("SELECT 1 FROM referral_accounts "
                                 "WHERE referral_code = :code"),
                            {"code": code},
                        )).first()
                        if taken is not None:
                            continue
                        await self.db.execute(text("""
                          INSERT INTO referral_accounts(
                            email, referral_code, referred_count,
                            rewards_earned, created_at
                          ) VALUES (:email, :code, 0, 0, :now)
                          ON CONFLICT (email) DO NOTHING
                        """), {"email": email, "code": code,
                               "now": self.clock()})
            except IntegrityError:
                # the code was minted concurrently by someone else
                continue
            # either our row, or one a concurrent request created first
            account = await self.find(email)
            if account is not None:
                return account

        raise PersistenceFailure(
            f"could not mint a unique referral code for {email}"
        )

    async def record_referral(
        self, referrer_code: str, referee_email: str
    ) -> Optional[ReferralCredit]:
        """
        Add `referee_email` to the referred set of the account owning
        `referrer_code`. Returns the new referred count, or None when the code
        is unknown, belongs to the referee, or the referee is already in the
        set (idempotent no-op).
        """
        code = normalize_code(referrer_code)
        if not code:
            return None
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    SQL_ACCOUNT_BY_CODE, {"code": code}
                )).mappings().first()
                if row is None or row["email"] == referee_email:
                    return None
                referrer = row["email"]

                link = (await self.db.execute(text("""
                  INSERT INTO referral_links(
                    referrer_email, referee_email, created_at
                  ) VALUES (:referrer, :referee, :now)
                  ON CONFLICT (referrer_email, referee_email) DO NOTHING
                  RETURNING id
                """), {"referrer": referrer, "referee": referee_email,
                       "now": self.clock()})).first()
                if link is None:
                    return None

                # single-row increment: the count each caller sees is unique
                count = (await self.db.execute(text("""
                  UPDATE referral_accounts
                  SET referred_count = referred_count + 1
                  WHERE email = :email
                  RETURNING referred_count
                """), {"email": referrer})).scalar_one()
        return ReferralCredit(referrer_email=referrer,
                              referred_count=int(count))

    async def increment_rewards(self, referrer_email: str) -> int:
        async with self.gated():
            async with self.db.begin():
                count = (await self.db.execute(text("""
                  UPDATE referral_accounts
                  SET rewards_earned = rewards_earned + 1
                  WHERE email = :email
                  RETURNING rewards_earned
                """), {"email": referrer_email})).scalar_one()
        return int(count)

    async def referred(self, referrer_email: str) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT referee_email FROM referral_links
                  WHERE referrer_email = :email
                  ORDER BY id
                """), {"email": referrer_email})).all()
        return [r[0] for r in rows]

    async def list_accounts(self, limit: int = 200) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT email, referral_code, referred_count, rewards_earned,
                         created_at
                  FROM referral_accounts
                  ORDER BY created_at DESC
                  LIMIT :lim
                """), {"lim": max(1, min(int(limit), 1000))})).mappings().all()
        return [dict(r) for r in rows]
