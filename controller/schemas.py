from pydantic import BaseModel, Field
from typing import List, Optional


class MineRequest(BaseModel):
    count: int = Field(1, ge=1, description="Number of blocks to mine")


class MineResponse(BaseModel):
    blocks: List[str]
    height: Optional[int]
    tip_hash: Optional[str]
    correlation_id: str


class ResetResponse(BaseModel):
    height: Optional[int]
    tip_hash: Optional[str]
    correlation_id: str


class QueueInfo(BaseModel):
    depth: int
    pending: int


class NotifierInfo(BaseModel):
    enabled: bool
    delivered: int
    failed_attempts: int
    dropped: int
    queued: int


class StatusResponse(BaseModel):
    readiness: str
    height: Optional[int]
    tip_hash: Optional[str]
    last_mined: List[str]
    last_poll_at: Optional[float]
    last_error: Optional[str]
    consecutive_failures: int
    queue: QueueInfo
    notifier: NotifierInfo


class HealthResponse(BaseModel):
    status: str
    readiness: str


class ErrorResponse(BaseModel):
    error: str
    detail: str
    readiness: Optional[str] = None
    classification: Optional[str] = None
    code: Optional[int] = None
    request_id: Optional[str] = None
