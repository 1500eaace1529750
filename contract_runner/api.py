from __future__ import annotations

from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Query, Request, status
from sse_starlette.sse import EventSourceResponse

from contract_runner.contracts import ContractWorkspace
from contract_runner.errors import register_error_handlers
from contract_runner.job_store import RedisJobStore
from contract_runner.logging_config import get_logger, setup_logging
from contract_runner.models import (
    CancelResponse,
    CompileRequest,
    ContractInfo,
    JobLogs,
    JobOutcome,
    JobRecord,
    JobResult,
    JobStatus,
    JobSummary,
    NewContractRequest,
    SubmitResponse,
    ToolResponse,
)
from contract_runner.orchestrator import JobOrchestrator
from contract_runner.runner import ProcessRunner
from contract_runner.settings import Settings, get_settings
from contract_runner.sse import complete_event, log_event
from contract_runner.storage import InMemoryJobStore, JobStore

logger = get_logger(__name__)

API_DESCRIPTION = """
Contract Runner - compile ink! smart contracts as background jobs.

## Compile jobs

`POST /jobs` with `{"subject_name": "flipper", "payload": "<lib.rs source>"}`
returns a `job_id` immediately. The payload is written to `lib.rs` in a fresh
project and built with the configured toolchain (`pop build` by default).

- `GET /jobs/{job_id}` - status, and the result once the job has finished.
  Failed jobs carry the compiler's stderr and a list of parsed diagnostics.
- `GET /jobs/{job_id}/logs` - every log entry plus aggregated stdout/stderr.
- `GET /jobs/{job_id}/logs?stream=true` - Server-Sent Events: one event per
  log entry (event name = channel) and a final `complete` event.
- `POST /jobs/{job_id}/cancel` - stop a queued or running job.

## Contract projects

`POST /contracts`, `POST /contracts/{name}/build` and
`POST /contracts/{name}/deploy` wrap `pop new contract`, `pop build` and
`pop up` for named projects kept under `CONTRACTS_DIR`.
"""


def create_store(settings: Settings) -> JobStore:
    if settings.job_store == "redis":
        return RedisJobStore(max_retained_bytes=settings.max_output_bytes)
    return InMemoryJobStore(max_retained_bytes=settings.max_output_bytes)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    runner = ProcessRunner()
    store = create_store(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.orchestrator = JobOrchestrator(store, runner, settings)
    app.state.contracts = ContractWorkspace(settings, runner)
    logger.info("service.started", store=settings.job_store)
    try:
        yield
    finally:
        await app.state.orchestrator.shutdown()
        logger.info("service.stopped")


app = FastAPI(
    title="Contract Runner",
    version="0.1.0",
    description=API_DESCRIPTION,
    lifespan=lifespan,
)
register_error_handlers(app)


def get_store(request: Request) -> JobStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_contracts(request: Request) -> ContractWorkspace:
    return request.app.state.contracts


def _job_result(record: JobRecord, logs: JobLogs) -> JobResult:
    result = JobResult(
        **record.summary().model_dump(), terminal_error=record.terminal_error
    )
    if record.status is JobStatus.completed:
        result.result = JobOutcome(
            success=True,
            message=f"Contract {record.subject_name} compiled successfully",
            stdout=logs.stdout,
        )
    elif record.status is JobStatus.failed:
        result.result = JobOutcome(
            success=False,
            message=record.terminal_error or "compilation failed",
            stderr=logs.stderr,
            errors=record.errors,
        )
    return result


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post(
    "/jobs", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED
)
async def submit_job(
    request: CompileRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> SubmitResponse:
    record = await orchestrator.submit(request)
    return SubmitResponse(
        job_id=record.id, status=record.status, created_at=record.created_at
    )


@app.get("/jobs", response_model=list[JobSummary])
async def list_jobs(store: JobStore = Depends(get_store)) -> list[JobSummary]:
    return [record.summary() for record in await store.list_jobs()]


@app.get("/jobs/{job_id}", response_model=JobResult)
async def get_job(job_id: str, store: JobStore = Depends(get_store)) -> JobResult:
    record = await store.get(job_id)
    logs = await store.get_logs(job_id)
    return _job_result(record, logs)


@app.get("/jobs/{job_id}/logs", response_model=JobLogs)
async def get_job_logs(
    job_id: str,
    stream: bool = Query(default=False),
    store: JobStore = Depends(get_store),
):
    if not stream:
        return await store.get_logs(job_id)

    await store.get(job_id)

    async def events():
        # Cancelled by EventSourceResponse when the client disconnects; the
        # job itself keeps running.
        async with aclosing(store.subscribe(job_id)) as entries:
            async for entry in entries:
                yield log_event(entry)
        yield complete_event(await store.get(job_id))

    return EventSourceResponse(events())


@app.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    cancelled = await orchestrator.cancel(job_id)
    return CancelResponse(job_id=job_id, cancelled=cancelled)


@app.get("/contracts", response_model=list[ContractInfo])
async def list_contracts(
    contracts: ContractWorkspace = Depends(get_contracts),
) -> list[ContractInfo]:
    return contracts.list_contracts()


@app.post("/contracts", response_model=ToolResponse)
async def new_contract(
    request: NewContractRequest,
    contracts: ContractWorkspace = Depends(get_contracts),
) -> ToolResponse:
    return await contracts.create(
        request.contract_name, request.contract_type, request.template
    )


@app.post("/contracts/{name}/build", response_model=ToolResponse)
async def build_contract(
    name: str, contracts: ContractWorkspace = Depends(get_contracts)
) -> ToolResponse:
    return await contracts.build(name)


@app.post("/contracts/{name}/deploy", response_model=ToolResponse)
async def deploy_contract(
    name: str, contracts: ContractWorkspace = Depends(get_contracts)
) -> ToolResponse:
    return await contracts.deploy(name)
