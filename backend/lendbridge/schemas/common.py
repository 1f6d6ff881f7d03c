from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

class Ok(BaseModel, Generic[T]):
    success: bool = True
    data: T

class PageOut(BaseModel, Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    pages: int
