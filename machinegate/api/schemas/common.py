"""Common schemas for the Machine Gate API."""

from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of a listing; ``pages`` is the page count at ``per_page``."""
    items: List[T]
    total: int
    page: int
    per_page: int
    pages: int


class ErrorDetail(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    """Body of every domain error response."""
    error: str
    code: str
    message: str
    details: List[ErrorDetail] = []


class ServiceWarning(BaseModel):
    code: str
    message: str


class SuccessResponse(BaseModel):
    """Standard success response."""
    message: str
    data: Optional[Dict[str, Any]] = None
