"""Turn rustc/cargo style diagnostic text into structured error records.

Best effort and side-effect free: unrecognised input yields an empty list,
never an exception.
"""

from __future__ import annotations

import re

from contract_runner.models import CompileError, ErrorLocation

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
ERROR_LINE = re.compile(r"^\s*error\[(?P<code>[A-Za-z0-9_]+)\]:\s*(?P<message>.*?)\s*$")
LOCATION_LINE = re.compile(
    r"^\s*-->\s*(?P<file>.+?):(?P<line>\d+):(?P<column>\d+)\s*$"
)

# Build-progress markers emitted by cargo between diagnostics.
PROGRESS_PREFIXES = (
    "Compiling",
    "Checking",
    "Building",
    "Finished",
    "Downloading",
    "Downloaded",
    "Updating",
    "Locking",
    "Adding",
    "Blocking",
    "Fresh",
    "Running",
)


def _is_progress(line: str) -> bool:
    return line.lstrip().startswith(PROGRESS_PREFIXES)


def extract_errors(text: str | None) -> list[CompileError]:
    if not text:
        return []

    records: list[CompileError] = []
    current: CompileError | None = None

    for raw in ANSI_ESCAPE.sub("", text).splitlines():
        line = raw.rstrip("\r\n")

        match = ERROR_LINE.match(line)
        if match:
            if current is not None:
                records.append(current)
            current = CompileError(
                code=match.group("code"), message=match.group("message")
            )
            continue

        if current is None or not line.strip() or _is_progress(line):
            continue

        location = LOCATION_LINE.match(line)
        if location and current.location is None:
            current.location = ErrorLocation(
                file=location.group("file"),
                line=int(location.group("line")),
                column=int(location.group("column")),
            )
            continue

        current.details.append(line)

    if current is not None:
        records.append(current)
    return records
