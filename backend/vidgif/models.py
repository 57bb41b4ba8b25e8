from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional

Phase = Literal["palette", "encode", "done"]
JobStatus = Literal["running", "done", "error"]


class ConversionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: str
    output: str
    width: int = Field(480, gt=0)
    fps: int = Field(15, gt=0)
    start: Optional[str] = None
    duration: Optional[str] = None
    overwrite: bool = False
    loop: Literal[0, 1] = 0


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    percent: int = Field(ge=0, le=100)
    out_time_ms: Optional[int] = None
    duration_ms: Optional[int] = None


class EngineProcessResult(BaseModel):
    code: int
    stdout: str = ""
    stderr: str = ""


class SubmitResponse(BaseModel):
    job_id: str
    status: JobStatus = "running"


class StatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    progress: Optional[ProgressEvent] = None
    error: Optional[str] = None
