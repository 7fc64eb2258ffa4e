import asyncio
import random
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest

from wakatv.codes import CodeGenerator
from wakatv.infra.sql import make_async_engine
from wakatv.model.db import Base
from wakatv.model.inventory import SqlInventoryStore
from wakatv.model.ledger import Ledger
from wakatv.model.referral import ReferralLedger
from wakatv.notifier import Notifier
from wakatv.redemption import RedemptionRequest, RedemptionWorkflow


class FakeNotifier(Notifier):
    """Records deliveries; can be told to fail, raise, or stall."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.rewards: List[tuple] = []
        self.fail = False
        self.fail_rewards = False
        self.raise_error: Optional[Exception] = None
        self.delay = 0.0
        self.delivering = asyncio.Event()

    async def deliver(self, to_email, codes):
        self.delivering.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail:
            return False
        self.sent.append((to_email, list(codes)))
        return True

    async def deliver_reward(self, to_email, code):
        if self.fail_rewards:
            return False
        self.rewards.append((to_email, code))
        return True

    def delivered_codes(self) -> List[str]:
        return [c for _, codes in self.sent for c in codes]


class Harness:
    """Builds stores and workflows on fresh sessions of one test database."""

    def __init__(self, SessionAsync, gated, notifier: FakeNotifier):
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.notifier = notifier
        self.rng = random.Random(1234)

    @asynccontextmanager
    async def session(self):
        async with self.SessionAsync() as session:
            yield session

    @asynccontextmanager
    async def inventory(self):
        async with self.session() as s:
            yield SqlInventoryStore(db=s, gated=self.gated)

    @asynccontextmanager
    async def ledger(self):
        async with self.session() as s:
            yield Ledger(db=s, gated=self.gated)

    @asynccontextmanager
    async def referrals(self, generator: CodeGenerator = None):
        async with self.session() as s:
            yield ReferralLedger(
                db=s, gated=self.gated,
                generator=generator or CodeGenerator(rng=self.rng),
            )

    @asynccontextmanager
    async def workflow(self, **kw):
        async with self.session() as s:
            yield RedemptionWorkflow(
                inventory=SqlInventoryStore(db=s, gated=self.gated),
                ledger=Ledger(db=s, gated=self.gated),
                referrals=ReferralLedger(
                    db=s, gated=self.gated,
                    generator=CodeGenerator(rng=self.rng),
                ),
                notifier=self.notifier,
                **kw,
            )

    async def redeem(self, email, quantity=1, reference=None,
                     referral_code=None, **kw):
        reference = reference or f"ref-{self.rng.getrandbits(64):x}"
        async with self.workflow(**kw) as wf:
            return await wf.redeem(RedemptionRequest(
                email=email, quantity=quantity, reference=reference,
                referral_code=referral_code,
            ))

    async def upload(self, codes) -> int:
        async with self.inventory() as inv:
            return await inv.bulk_upsert(codes)

    async def stats(self):
        async with self.inventory() as inv:
            return await inv.stats()

    async def unused(self) -> List[str]:
        async with self.inventory() as inv:
            return sorted(c["code"] for c in await inv.list_unused())


@pytest.fixture
async def database(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'wakatv.sqlite'}"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def harness(database, notifier):
    SessionAsync, gated = database
    return Harness(SessionAsync, gated, notifier)
