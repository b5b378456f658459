from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Food, FoodStatus, Ingredient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingFood:
    id: UUID
    name: str
    created_by: Optional[str] = None
    date_published: Optional[datetime] = None


@dataclass(frozen=True)
class CanonicalMatch:
    id: UUID
    name: str


async def fetch_pending_foods(session: AsyncSession, limit: int) -> List[PendingFood]:
    """Oldest pending foods first, capped at `limit`."""
    stmt = (
        select(Food.id, Food.name, Food.created_by, Food.date_published)
        .where(Food.status == FoodStatus.PENDING)
        .order_by(Food.date_published.asc(), Food.id.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [
        PendingFood(id=row.id, name=row.name, created_by=row.created_by, date_published=row.date_published)
        for row in result
    ]


async def find_canonical_food(session: AsyncSession, normalized_name: str) -> Optional[CanonicalMatch]:
    """Case-insensitive exact match against approved, non-aliased foods."""
    name = (normalized_name or "").strip()
    if not name:
        return None
    stmt = (
        select(Food.id, Food.name)
        .where(
            func.lower(Food.name) == name.lower(),
            Food.status == FoodStatus.APPROVED,
            Food.canonical_food_id.is_(None),
        )
        .order_by(Food.date_published.asc())
        .limit(1)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return CanonicalMatch(id=row.id, name=row.name)


async def count_ingredient_references(session: AsyncSession, food_id: UUID) -> int:
    stmt = select(func.count(Ingredient.id)).where(Ingredient.food_id == food_id)
    return int((await session.execute(stmt)).scalar_one() or 0)
