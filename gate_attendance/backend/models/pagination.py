import math
from typing import Generic, List, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Pagination(BaseModel):
    page: int
    limit: int
    pages: int


class Page(BaseModel, Generic[T]):
    """A slice of a listing plus the total count of matching rows."""
    items: List[T]
    total: int
    pagination: Pagination

    @classmethod
    def build(cls, items: List[T], total: int, page: int, limit: int) -> "Page[T]":
        pages = math.ceil(total / limit) if limit else 0
        return cls(items=items, total=total, pagination=Pagination(page=page, limit=limit, pages=pages))
