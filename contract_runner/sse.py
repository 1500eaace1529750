"""Server-Sent Events framing for job log streams.

The helpers build message dicts for ``EventSourceResponse``. The ``data``
field is always text, so payloads are serialized to compact JSON.
"""

from __future__ import annotations

import json
from typing import Any

from contract_runner.models import JobRecord, LogEntry


def sse_json(
    event: str,
    data: Any,
    *,
    event_id: str | int | None = None,
) -> dict[str, str]:
    message = {"event": event, "data": json.dumps(data, separators=(",", ":"))}
    if event_id is not None:
        message["id"] = str(event_id)
    return message


def log_event(entry: LogEntry) -> dict[str, str]:
    return sse_json(
        entry.channel.value, entry.model_dump(mode="json"), event_id=entry.seq
    )


def complete_event(record: JobRecord) -> dict[str, str]:
    return sse_json(
        "complete",
        {
            "job_id": record.id,
            "status": record.status.value,
            "exit_code": record.exit_code,
            "terminal_error": record.terminal_error,
        },
    )
