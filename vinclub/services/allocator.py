"""
Inventory allocator

Selects up to N distinct in-stock wines from a cave, one bottle each, and
decrements stock with a conditional UPDATE (stock_quantity > 0). The
database applies the check and the decrement as one atomic row write, so
two concurrent allocations can never take the same last bottle: the loser
sees rowcount 0 and moves on to the next candidate.

Selection order is the ALLOCATION_ORDER setting:
- newest_first: most recently added wine first, ties on lower id
- oldest_first: earliest added first, ties on lower id
- highest_stock_first: largest stock first, ties on lower id

Runs inside the caller's transaction; nothing here commits.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.config import settings
from vinclub.models.wine_cave import Wine

logger = logging.getLogger(__name__)

ORDERINGS = {
    "newest_first": (Wine.created_at.desc(), Wine.id.asc()),
    "oldest_first": (Wine.created_at.asc(), Wine.id.asc()),
    "highest_stock_first": (Wine.stock_quantity.desc(), Wine.id.asc()),
}


@dataclass
class Allocation:
    wine_id: int
    quantity: int
    description: str


@dataclass
class AllocationResult:
    requested: int
    allocations: List[Allocation] = field(default_factory=list)

    @property
    def allocated(self) -> int:
        return sum(a.quantity for a in self.allocations)

    @property
    def shortfall(self) -> int:
        return max(self.requested - self.allocated, 0)

    @property
    def under_fulfilled(self) -> bool:
        return self.shortfall > 0


class InventoryAllocator:
    def __init__(self, db: AsyncSession, order: Optional[str] = None):
        self.db = db
        self.order = order or settings.ALLOCATION_ORDER
        if self.order not in ORDERINGS:
            raise ValueError(f"Unknown allocation order: {self.order}")

    async def _candidates(self, wine_cave_id: int) -> list:
        result = await self.db.execute(
            select(Wine.id, Wine.name, Wine.varietal)
            .where(Wine.wine_cave_id == wine_cave_id, Wine.stock_quantity > 0)
            .order_by(*ORDERINGS[self.order])
        )
        return list(result.all())

    async def _decrement(self, wine_id: int) -> bool:
        """Take one bottle if any is left. Returns False if the wine ran out."""
        result = await self.db.execute(
            update(Wine)
            .where(Wine.id == wine_id, Wine.stock_quantity > 0)
            .values(stock_quantity=Wine.stock_quantity - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def allocate(self, wine_cave_id: int, bottles: int) -> AllocationResult:
        """
        Allocate up to `bottles` distinct wines from a cave.

        Under-fulfillment is not an error: the result reports the shortfall.
        """
        allocation = AllocationResult(requested=bottles)
        if bottles <= 0:
            return allocation

        for wine_id, name, varietal in await self._candidates(wine_cave_id):
            if allocation.allocated >= bottles:
                break
            if not await self._decrement(wine_id):
                logger.debug(f"Wine {wine_id} sold out during allocation, trying next candidate")
                continue
            description = f"{name} - {varietal}" if varietal else name
            allocation.allocations.append(Allocation(wine_id=wine_id, quantity=1, description=description))

        if allocation.under_fulfilled:
            logger.warning(
                f"Under-fulfillment in cave {wine_cave_id}: "
                f"allocated {allocation.allocated} of {bottles} bottles"
            )
        return allocation
