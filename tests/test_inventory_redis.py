import asyncio

import fakeredis
import pytest

from wakatv.errors import InsufficientInventory
from wakatv.model.inventory import RedisInventoryStore, new_store


@pytest.fixture
async def r():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(r):
    return RedisInventoryStore(r=r, clock=lambda: 1000.0)


async def unused(store):
    return sorted(c["code"] for c in await store.list_unused())


async def test_factory_builds_redis_store(r):
    assert isinstance(new_store(backend="redis", r=r), RedisInventoryStore)


async def test_claim_marks_codes_used(store):
    await store.bulk_upsert(["A", "B", "C"])

    claimed = await store.claim(2, "u1@example.com")

    assert len(claimed) == 2 and set(claimed) <= {"A", "B", "C"}
    rows = {c["code"]: c for c in await store.list_all()}
    for code in claimed:
        assert rows[code]["used"] is True
        assert rows[code]["used_by"] == "u1@example.com"
        assert rows[code]["used_at"] == 1000.0
    assert await store.stats() == {"total": 3, "used": 2, "unused": 1}


async def test_shortage_claims_nothing(store):
    await store.bulk_upsert(["A", "B", "C"])
    await store.claim(2, "u1@example.com")
    before = await unused(store)

    with pytest.raises(InsufficientInventory) as exc:
        await store.claim(2, "u2@example.com")

    assert exc.value.requested == 2
    assert exc.value.available == 1
    assert await unused(store) == before


@pytest.mark.parametrize("n", [0, -1, True, "2"])
async def test_claim_rejects_non_positive_int(store, n):
    with pytest.raises(ValueError):
        await store.claim(n, "u@example.com")


async def test_concurrent_claims_are_disjoint(store):
    codes = [f"CODE{i:02d}" for i in range(10)]
    await store.bulk_upsert(codes)

    async def claim_three(i):
        try:
            return await store.claim(3, f"user{i}@example.com")
        except InsufficientInventory:
            return []

    results = await asyncio.gather(*(claim_three(i) for i in range(5)))

    flat = [c for batch in results for c in batch]
    assert sorted(len(batch) for batch in results) == [0, 0, 3, 3, 3]
    assert len(flat) == len(set(flat)) == 9
    assert (await store.stats())["unused"] == 1


async def test_release_returns_exact_codes(store):
    await store.bulk_upsert(["A", "B", "C", "D"])
    claimed = await store.claim(2, "u@example.com")

    assert await store.release(claimed + ["C-never-claimed"]) == 2
    assert await store.release(claimed) == 0
    assert await store.release([]) == 0

    rows = {c["code"]: c for c in await store.list_all()}
    for code in claimed:
        assert rows[code]["used"] is False
        assert rows[code]["used_by"] is None
        assert rows[code]["used_at"] is None
    assert await unused(store) == ["A", "B", "C", "D"]


async def test_upload_is_idempotent_and_keeps_used_state(store):
    assert await store.bulk_upsert(["A", "B"]) == 2
    claimed = await store.claim(2, "u@example.com")

    assert await store.bulk_upsert(["A", " B ", "C", "C", "", "  "]) == 1

    rows = {c["code"]: c for c in await store.list_all()}
    assert sorted(rows) == ["A", "B", "C"]
    for code in claimed:
        assert rows[code]["used"] is True
        assert rows[code]["used_by"] == "u@example.com"
    assert rows["C"]["used"] is False


async def test_delete_removes_codes_everywhere(store):
    await store.bulk_upsert(["A", "B", "C"])
    await store.claim(1, "u@example.com")

    assert await store.delete(["A", "C", "missing"]) == 2
    assert await store.delete([]) == 0

    assert [c["code"] for c in await store.list_all()] == ["B"]
    assert (await store.stats())["total"] == 1
