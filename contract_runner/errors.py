"""Exception taxonomy and FastAPI error handler registration."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from contract_runner.logging_config import get_logger

logger = get_logger(__name__)


class ContractRunnerError(Exception):
    """Base error surfaced synchronously to API callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(ContractRunnerError):
    status_code = 422


class JobNotFoundError(ContractRunnerError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class ContractNotFoundError(ContractRunnerError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, name: str) -> None:
        super().__init__(f"Contract {name} not found")
        self.name = name


class ConflictError(ContractRunnerError):
    status_code = status.HTTP_409_CONFLICT


class JobStateError(ConflictError):
    """Illegal status transition or a write to a terminal job."""


class ToolError(ContractRunnerError):
    """A collaborator command (scaffold, build, deploy) failed."""


# Job failures are recorded on the job record, never raised to the submitter.


class JobFailure(Exception):
    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


class SetupError(JobFailure):
    pass


class LaunchError(JobFailure):
    pass


class CompilationError(JobFailure):
    def __init__(self, exit_code: int) -> None:
        super().__init__(f"compiler exited with code {exit_code}", exit_code)


class CompileTimeoutError(JobFailure):
    def __init__(self, timeout_sec: float, exit_code: int | None = None) -> None:
        super().__init__(
            f"compilation timed out after {timeout_sec:g}s, process terminated",
            exit_code,
        )


class JobCancelledError(JobFailure):
    def __init__(self) -> None:
        super().__init__("cancelled")


async def _handle_runner_error(
    request: Request, exc: ContractRunnerError
) -> JSONResponse:
    content: dict[str, Any] = {"detail": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    if exc.status_code >= 500:
        logger.error(
            "request.failed",
            path=request.url.path,
            error=exc.message,
            details=exc.details,
        )
    return JSONResponse(status_code=exc.status_code, content=content)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ContractRunnerError, _handle_runner_error)  # type: ignore[arg-type]
