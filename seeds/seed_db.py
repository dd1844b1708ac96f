"""DB table creation + catalog seed (plans, highlight plans, launch coupon)."""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import select

from database import async_session, init_db
from database.models import Coupon, HighlightPlan, Plan

PLANS = [
    {"slug": "gratuito", "name": "Gratuito", "price": "0", "duration_days": 30, "photo_limit": 1,
     "description": "Um anúncio simples por 30 dias"},
    {"slug": "basico", "name": "Básico", "price": "49.90", "duration_days": 30, "photo_limit": 5,
     "description": "Até 5 fotos por anúncio"},
    {"slug": "premium", "name": "Premium", "price": "199.90", "duration_days": 30, "photo_limit": 15,
     "description": "Até 15 fotos e prioridade na busca"},
]

HIGHLIGHT_PLANS = [
    {"name": "Destaque 7 dias", "price": "19.90", "duration_days": 7},
    {"name": "Destaque 15 dias", "price": "34.90", "duration_days": 15},
    {"name": "Destaque de boas-vindas", "price": "0", "duration_days": 3},
]

COUPONS = [
    {"code": "DESCONTO10", "discount_percent": "10", "max_uses": 100,
     "description": "10% de desconto na primeira compra"},
]


async def seed():
    print("[1/4] creating tables...")
    await init_db()

    async with async_session() as session:
        existing = await session.execute(select(Plan).limit(1))
        if existing.scalar_one_or_none():
            print("[SKIP] catalog already seeded.")
            return

        print("[2/4] plans...")
        for item in PLANS:
            session.add(Plan(**{**item, "price": Decimal(item["price"])}))
        await session.flush()

        print("[3/4] highlight plans...")
        for item in HIGHLIGHT_PLANS:
            session.add(HighlightPlan(**{**item, "price": Decimal(item["price"])}))
        await session.flush()

        print("[4/4] coupons...")
        for item in COUPONS:
            session.add(Coupon(
                code=item["code"].upper(),
                description=item["description"],
                discount_percent=Decimal(item["discount_percent"]),
                max_uses=item["max_uses"],
            ))
        await session.commit()
        print(f"      {len(PLANS)} plans, {len(HIGHLIGHT_PLANS)} highlight plans, {len(COUPONS)} coupons")


if __name__ == "__main__":
    asyncio.run(seed())
