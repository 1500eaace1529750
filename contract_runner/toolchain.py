"""Command lines, environment and project files for the contract toolchain."""

from __future__ import annotations

import os
import re
from pathlib import Path

from contract_runner.settings import Settings

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"

# Only these are passed through from the service's own environment. Everything
# cargo-related is set explicitly so concurrent jobs never share a target dir.
INHERITED_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "RUSTUP_TOOLCHAIN")

ADDRESS_PATTERN = re.compile(r"Contract address: (0x[a-fA-F0-9]+)")
CONTRACT_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,63}$")

MANIFEST_TEMPLATE = """\
[package]
name = "{crate}"
version = "0.1.0"
edition = "2021"

[dependencies]
ink = {{ version = "{ink_version}", default-features = false }}

[lib]
path = "lib.rs"

[features]
default = ["std"]
std = ["ink/std"]
ink-as-dependency = []
e2e-tests = []
"""


def build_env(
    settings: Settings, workdir: Path, extra: dict[str, str] | None = None
) -> dict[str, str]:
    env = {key: os.environ[key] for key in INHERITED_ENV if key in os.environ}
    cargo_bin = str(Path(settings.cargo_home) / "bin")
    env["PATH"] = os.pathsep.join([cargo_bin, env.get("PATH", DEFAULT_PATH)])
    env.update(
        CARGO_HOME=settings.cargo_home,
        RUSTUP_HOME=settings.rustup_home,
        CARGO_TARGET_DIR=str(workdir / "target"),
        CARGO_TERM_COLOR="never",
    )
    if extra:
        env.update(extra)
    return env


def build_command(settings: Settings) -> list[str]:
    return [settings.toolchain_bin, *settings.build_args]


def new_contract_command(
    settings: Settings, name: str, contract_type: str, template: str
) -> list[str]:
    return [
        settings.toolchain_bin,
        "new",
        "contract",
        name,
        "--contract-type",
        contract_type,
        "--template",
        template,
    ]


def deploy_command(settings: Settings) -> list[str]:
    return [settings.toolchain_bin, "up"]


def crate_name(subject_name: str) -> str:
    """Cargo package name derived from a free-form subject label."""
    name = re.sub(r"[^a-z0-9_]+", "_", subject_name.strip().lower()).strip("_")
    if not name or not name[0].isalpha():
        name = f"contract_{name}".rstrip("_")
    return name


def render_manifest(settings: Settings, subject_name: str) -> str:
    return MANIFEST_TEMPLATE.format(
        crate=crate_name(subject_name), ink_version=settings.ink_version
    )


def parse_address(output: str) -> str | None:
    match = ADDRESS_PATTERN.search(output)
    return match.group(1) if match else None


def is_valid_contract_name(name: str) -> bool:
    return bool(CONTRACT_NAME.match(name))
