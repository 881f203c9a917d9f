import argparse
import asyncio
import os
import sys

from rsastore.helpers import now_ts
from rsastore.infra.logs import setup_logging
from rsastore.infra.sql import make_database
from rsastore.model.db import Product, create_tables
from rsastore.model.settings import SettingsStore

DEMO_PRODUCT = dict(
    id="demo-ebook",
    name="E-Book Demo",
    slug="e-book-demo",
    description="Produk contoh untuk uji alur pembayaran",
    price=50_000,
    stock=100,
    is_active=True,
    download_link="https://example.com/files/e-book-demo.pdf",
)


async def init_store(database_url: str, demo_product: bool,
                     webhook_key: str | None) -> None:
    engine, SessionAsync, gated = make_database(database_url)
    await create_tables(engine)
    print('✅ tables created')

    async with SessionAsync() as db:
        settings = SettingsStore(db=db, gated=gated)
        await settings.seed_defaults()
        print('✅ default settings present / inserted')
        if webhook_key:
            await settings.update("webhook_api_key", webhook_key)
            print('✅ webhook key set')

        if demo_product:
            async with db.begin():
                if await db.get(Product, DEMO_PRODUCT["id"]) is None:
                    ts = now_ts()
                    db.add(Product(**DEMO_PRODUCT, created_at=ts,
                                   updated_at=ts))
            print('✅ demo product present / inserted')
    await engine.dispose()


if __name__ == '__main__':
    setup_logging()
    parser = argparse.ArgumentParser(
        description="Create tables and seed default settings"
    )
    parser.add_argument("--database-url",
                        default=os.getenv("DATABASE_URL"))
    parser.add_argument("--demo-product", action="store_true",
                        help="insert a demo product (price 50.000)")
    parser.add_argument("--webhook-key",
                        help="set the shared webhook API key")
    args = parser.parse_args()
    if not args.database_url:
        print("NEED DATABASE_URL! e.g. sqlite:///./rsastore.db")
        sys.exit(1)
    asyncio.run(init_store(args.database_url, args.demo_product,
                           args.webhook_key))
