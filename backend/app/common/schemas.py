"""Response envelopes and pagination types shared by every router."""
from typing import Any, Dict, List, Optional, TypeVar

from fastapi import Query
from pydantic import BaseModel, Field

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class Pagination(BaseModel):
    """1-indexed page selection. ``limit == 0`` means unbounded (internal use)."""
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=DEFAULT_PAGE_SIZE, ge=0)

    @property
    def skip(self) -> int:
        if self.limit == 0:
            return 0
        return (self.page - 1) * self.limit

    @classmethod
    def unbounded(cls) -> "Pagination":
        return cls(page=1, limit=0)

    def window(self, items: List[T]) -> List[T]:
        """Slice an already-sorted list to this page."""
        if self.limit == 0:
            return list(items)
        return items[self.skip:self.skip + self.limit]


class Metadata(BaseModel):
    page: int
    limit: int
    total: int
    count: int
    hasPrev: bool
    hasNext: bool

    @classmethod
    def build(cls, pag: Pagination, total: int, count: int) -> "Metadata":
        return cls(
            page=pag.page,
            limit=pag.limit,
            total=total,
            count=count,
            hasPrev=pag.page > 1,
            hasNext=count > 0 and pag.limit > 0 and pag.page * pag.limit < total,
        )


def envelope(status: int, data: Any = None, message: Optional[str] = None) -> dict:
    """Build a JSON-ready success envelope, omitting empty fields."""
    body: Dict[str, Any] = {"status": status}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def paginated(items: List[BaseModel], total: int, pag: Pagination) -> dict:
    return {
        "metadata": Metadata.build(pag, total, len(items)).model_dump(),
        "result": [item.model_dump(mode="json") for item in items],
    }


def page_params(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
) -> Pagination:
    """Query-string pagination for list endpoints."""
    return Pagination(page=page, limit=limit)
