from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class SegmentCreate(BaseModel):
    session_id: str
    start_time: float = Field(ge=0)
    end_time: float

    @model_validator(mode="after")
    def check_order(self) -> "SegmentCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be greater than start_time")
        return self


class ApprovalUpdate(BaseModel):
    approval_status: Literal["approved", "rejected"]


class ProcessRequest(BaseModel):
    session_id: str
    # All segments (by start time) when omitted
    segment_ids: list[str] | None = None


class SessionRequest(BaseModel):
    session_id: str


class ExportRequest(BaseModel):
    session_id: str
    format: Literal["mp4", "mov"] = "mp4"


class SessionResponse(BaseModel):
    session: dict[str, Any]
    segments: list[dict[str, Any]] = Field(default_factory=list)


class ExportStartResponse(BaseModel):
    export_id: str
    status: str
    estimated_seconds: int
