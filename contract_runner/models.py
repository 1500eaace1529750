from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


class LogChannel(str, Enum):
    info = "info"
    stdout = "stdout"
    stderr = "stderr"
    success = "success"
    error = "error"


OUTPUT_CHANNELS = (LogChannel.stdout, LogChannel.stderr)


class LogEntry(BaseModel):
    seq: int
    timestamp: datetime
    channel: LogChannel
    text: str


class ErrorLocation(BaseModel):
    file: str
    line: int
    column: int


class CompileError(BaseModel):
    """One diagnostic parsed from compiler output."""

    code: str
    message: str
    location: ErrorLocation | None = None
    details: list[str] = Field(default_factory=list)


class JobRecord(BaseModel):
    id: str
    subject_name: str
    payload: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    terminal_error: str | None = None
    errors: list[CompileError] = Field(default_factory=list)
    output_truncated: bool = False

    def summary(self) -> JobSummary:
        fields = set(JobSummary.model_fields)
        return JobSummary.model_validate(self.model_dump(include=fields))


class JobSummary(BaseModel):
    id: str
    subject_name: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None


class JobLogs(BaseModel):
    job_id: str
    entries: list[LogEntry] = Field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False


class CompileRequest(BaseModel):
    subject_name: str = Field(default="contract", max_length=128)
    payload: str

    @field_validator("payload")
    @classmethod
    def _payload_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("payload must not be empty")
        return value


class SubmitResponse(BaseModel):
    job_id: str
    status: JobStatus
    created_at: datetime


class JobOutcome(BaseModel):
    success: bool
    message: str
    stdout: str | None = None
    stderr: str | None = None
    errors: list[CompileError] = Field(default_factory=list)


class JobResult(JobSummary):
    terminal_error: str | None = None
    result: JobOutcome | None = None


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class NewContractRequest(BaseModel):
    contract_name: str
    contract_type: str = "erc"
    template: str = "erc20"


class ContractInfo(BaseModel):
    name: str
    is_built: bool
    status: str


class ToolResponse(BaseModel):
    success: bool = True
    message: str
    contract_name: str
    logs: str = ""
    address: str | None = None
