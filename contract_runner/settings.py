from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    job_data_dir: str = field(
        default_factory=lambda: os.getenv("JOB_DATA_DIR", "data/jobs")
    )
    contracts_dir: str = field(
        default_factory=lambda: os.getenv("CONTRACTS_DIR", "data/contracts")
    )
    toolchain_bin: str = field(
        default_factory=lambda: os.getenv("TOOLCHAIN_BIN", "pop")
    )
    build_args: tuple[str, ...] = field(
        default_factory=lambda: tuple(
            shlex.split(os.getenv("TOOLCHAIN_BUILD_ARGS", "build"))
        )
    )
    compile_timeout_sec: int = field(
        default_factory=lambda: _env_int("COMPILE_TIMEOUT_SEC", 300)
    )
    deploy_timeout_sec: int = field(
        default_factory=lambda: _env_int("DEPLOY_TIMEOUT_SEC", 120)
    )
    scaffold_timeout_sec: int = field(
        default_factory=lambda: _env_int("SCAFFOLD_TIMEOUT_SEC", 120)
    )
    max_concurrent_jobs: int = field(
        default_factory=lambda: _env_int("MAX_CONCURRENT_JOBS", 4)
    )
    max_output_bytes: int = field(
        default_factory=lambda: _env_int("MAX_OUTPUT_BYTES", 5 * 1024 * 1024)
    )
    cargo_home: str = field(
        default_factory=lambda: os.getenv(
            "CARGO_HOME", str(Path.home() / ".cargo")
        )
    )
    rustup_home: str = field(
        default_factory=lambda: os.getenv(
            "RUSTUP_HOME", str(Path.home() / ".rustup")
        )
    )
    ink_version: str = field(
        default_factory=lambda: os.getenv("INK_VERSION", "5.1.0")
    )
    job_store: str = field(
        default_factory=lambda: os.getenv("JOB_STORE", "memory").lower()
    )
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _env_flag("FAKE_REDIS"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = field(default_factory=lambda: _env_flag("LOG_JSON"))


def get_settings() -> Settings:
    return Settings()
