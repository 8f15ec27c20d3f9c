"""Read access to tutorial content."""
from typing import List, Optional

from smartassist.domain.dashboard import Table
from smartassist.domain.student import Tutorial
from smartassist.infrastructure.store import TableStore


class TutorialCatalog:

    def __init__(self, store: TableStore):
        self.store = store

    async def all(self) -> List[Tutorial]:
        rows = await self.store.select(Table.TUTORIALS, order_by="created_at")
        return [Tutorial.model_validate(row) for row in rows]

    async def get(self, tutorial_id: str, required: bool = True) -> Optional[Tutorial]:
        """Look a tutorial up by row id."""
        row = await self.store.select_one(Table.TUTORIALS, {"id": tutorial_id}, required=required)
        return Tutorial.model_validate(row) if row else None
