"""Pagination helpers."""

from typing import TypeVar, Generic

from pydantic import BaseModel

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int | None = None

    @property
    def next_offset(self) -> int | None:
        """Offset to resume from, or None when this page was the last one."""
        if len(self.items) < self.limit:
            return None
        if self.total is not None and self.offset + len(self.items) >= self.total:
            return None
        return self.offset + len(self.items)


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def page_meta(page: int, limit: int, total: int, returned: int) -> dict:
    """Page-number style metadata for list endpoints."""
    offset = (page - 1) * limit
    return {
        "current_page": page,
        "total_pages": (total + limit - 1) // limit if limit else 0,
        "total": total,
        "has_next_page": offset + returned < total,
        "has_prev_page": page > 1,
    }
