"""FastAPI routes for the Stripe metrics service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from ..config import Settings
from ..db.store import ResultStore
from ..jobs.models import job_owned_by
from ..jobs.queue import JobQueue
from ..security.api_keys import get_current_owner, get_request_settings

router = APIRouter()


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


def get_result_store(request: Request) -> ResultStore:
    return request.app.state.result_store


class SubmitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stripe_api_key: Optional[SecretStr] = Field(None, alias="stripeApiKey")


class SubmitResponse(BaseModel):
    queued: bool = True
    id: str


@router.post("/stripe", response_model=SubmitResponse)
async def submit_scrape(
    payload: Optional[SubmitRequest] = Body(None),
    owner_id: str = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
) -> SubmitResponse:
    credential = payload.stripe_api_key.get_secret_value().strip() if payload and payload.stripe_api_key else ""
    if not credential:
        raise HTTPException(status_code=400, detail="stripeApiKey is required")
    job_id = await queue.submit(owner_id, credential)
    return SubmitResponse(id=job_id)


class JobStatusResponse(BaseModel):
    id: str
    state: str
    progress: int
    failedReason: Optional[str]
    result: Optional[Dict[str, Any]]
    attemptsMade: int
    attemptsTotal: int


@router.get("/stripe/status/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    queue: JobQueue = Depends(get_job_queue),
    settings: Settings = Depends(get_request_settings),
) -> JobStatusResponse:
    if not job_owned_by(job_id, settings.job_name, owner_id):
        raise HTTPException(status_code=403, detail="Unauthorized")
    status = await queue.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(**status)


class ScrapedDataResponse(BaseModel):
    id: str
    userId: str
    jobId: str
    data: Dict[str, Any]
    createdAt: Optional[datetime]
    updatedAt: Optional[datetime]


class ScrapedDataListResponse(BaseModel):
    data: List[ScrapedDataResponse]
    count: int


@router.get("/stripe/data", response_model=ScrapedDataListResponse)
async def list_scraped_data(
    owner_id: str = Depends(get_current_owner),
    store: ResultStore = Depends(get_result_store),
    settings: Settings = Depends(get_request_settings),
) -> ScrapedDataListResponse:
    records = await store.list_for_owner(owner_id, limit=settings.results_page_size)
    data = [ScrapedDataResponse(**record.to_dict()) for record in records]
    return ScrapedDataListResponse(data=data, count=len(data))


@router.get("/stripe/data/{job_id}", response_model=ScrapedDataResponse)
async def get_scraped_data(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    store: ResultStore = Depends(get_result_store),
) -> ScrapedDataResponse:
    record = await store.get_for_job(owner_id, job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Data not found")
    return ScrapedDataResponse(**record.to_dict())


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime


@router.get("/health", response_model=HealthResponse, include_in_schema=False)
async def health_check() -> HealthResponse:
    return HealthResponse(timestamp=datetime.now(timezone.utc))
