from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    limit: int = Field(default=25, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class PaginatedResponse(BaseModel):
    items: list
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def create(cls, items: list, total: int, limit: int, offset: int) -> "PaginatedResponse":
        return cls(items=items, total=total, limit=limit, offset=offset, has_more=offset + len(items) < total)
