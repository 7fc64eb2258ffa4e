"""
Load access codes into the inventory without going through the admin API.

  python seed_codes.py --file codes.txt          # one code per line
  python seed_codes.py --generate 100            # random codes
  python seed_codes.py --generate 100 --print    # ... and print them

Uses DATABASE_URL (default sqlite:///./db/wakatv.sqlite). Re-running with the
same file is harmless: existing codes are skipped.
"""
import argparse
import asyncio
import os
from typing import Iterable, List

from wakatv.codes import CodeGenerator
from wakatv.infra.sql import make_async_engine
from wakatv.model.db import Base
from wakatv.model.inventory import SqlInventoryStore

ACCESS_CODE_LENGTH = 10


def generate_codes(n: int, generator: CodeGenerator = None) -> List[str]:
    generator = generator or CodeGenerator(length=ACCESS_CODE_LENGTH)
    out = set()
    while len(out) < n:
        out.add(generator.next())
    return sorted(out)


def read_codes(path: str) -> List[str]:
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


async def seed(database_url: str, codes: Iterable[str]) -> int:
    engine, SessionAsync, gated = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as session:
            store = SqlInventoryStore(db=session, gated=gated)
            inserted = await store.bulk_upsert(codes)
            stats = await store.stats()
    finally:
        await engine.dispose()
    print(f'✅ {inserted} new codes inserted')
    print(f'✅ inventory: {stats["unused"]} unused / {stats["total"]} total')
    return inserted


if __name__ == '__main__':
    ap = argparse.ArgumentParser(description="Seed WakaTV access codes")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--file", help="file with one code per line")
    src.add_argument("--generate", type=int, help="number of random codes")
    ap.add_argument("--print", action="store_true",
                    help="print the codes that were submitted")
    args = ap.parse_args()

    codes = read_codes(args.file) if args.file else \
        generate_codes(args.generate)
    if args.print:
        print("\n".join(codes))

    asyncio.run(seed(
        os.getenv("DATABASE_URL", "sqlite:///./db/wakatv.sqlite"), codes
    ))
