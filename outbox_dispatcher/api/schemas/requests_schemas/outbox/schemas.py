from typing import Optional

from fastapi import Query
from pydantic import BaseModel, Field


class DeadLetterListQuery(BaseModel):
    limit: int = 100

    @classmethod
    def as_query(
        cls,
        limit: int = Query(100, ge=1, le=1000),
    ) -> "DeadLetterListQuery":
        return cls(limit=limit)


class PurgeRequest(BaseModel):
    retention_days: Optional[int] = Field(
        None, ge=0, description="Срок хранения обработанных событий, дней"
    )
