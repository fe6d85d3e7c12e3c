from typing import Generic, TypeVar, Optional
from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None


class DeletedTrack(BaseModel):
    id: str
    title: Optional[str] = None


class CleanupResponse(BaseModel):
    deleted: int
    tracks: list[DeletedTrack] = []
