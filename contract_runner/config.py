from __future__ import annotations

from pathlib import Path

from contract_runner.settings import Settings, get_settings


def _ensure(path: str) -> Path:
    root = Path(path).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def data_dir(settings: Settings | None = None) -> Path:
    """Root directory for job data (per-job subdirs)."""
    return _ensure((settings or get_settings()).job_data_dir)


def contracts_dir(settings: Settings | None = None) -> Path:
    """Root directory for scaffolded contract projects."""
    return _ensure((settings or get_settings()).contracts_dir)
