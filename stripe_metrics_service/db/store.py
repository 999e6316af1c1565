"""Durable, queryable storage of aggregation results."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select

from ..aggregation.models import MetricsResult
from .models import ScrapedData
from .session import Database

logger = logging.getLogger(__name__)


class ResultStore:
    """Append-only store of :class:`ScrapedData` records, one per job."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def save(
        self,
        *,
        record_id: str,
        owner_id: str,
        job_id: str,
        metrics: MetricsResult,
        finished_at: datetime,
    ) -> ScrapedData:
        record = ScrapedData(
            id=record_id,
            user_id=owner_id,
            job_id=job_id,
            data={"metrics": metrics.to_dict(), "finishedAt": finished_at.isoformat()},
        )
        async with self.database.session_scope() as session:
            session.add(record)
        logger.info("Stored scrape result", extra={"record_id": record_id, "job_id": job_id})
        return record

    async def list_for_owner(self, owner_id: str, limit: int = 10) -> List[ScrapedData]:
        async with self.database.session_scope() as session:
            result = await session.execute(
                select(ScrapedData)
                .where(ScrapedData.user_id == owner_id)
                .order_by(ScrapedData.created_at.desc(), ScrapedData.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def get_for_job(self, owner_id: str, job_id: str) -> Optional[ScrapedData]:
        async with self.database.session_scope() as session:
            return await session.scalar(
                select(ScrapedData)
                .where(ScrapedData.user_id == owner_id, ScrapedData.job_id == job_id)
                .limit(1)
            )


__all__ = ["ResultStore"]
