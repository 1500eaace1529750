import stat
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from contract_runner.settings import Settings  # noqa: E402


# Stand-in for the `pop` CLI. Behaviour is driven by markers in lib.rs:
# MISMATCH -> rustc type error, SLEEP -> hang, SLOW -> succeed after a pause.
FAKE_POP = r'''
import os
import sys
import time
from pathlib import Path

MISMATCH = """error[E0308]: mismatched types
  --> lib.rs:10:5
   |
10 |     let value: u32 = "flip";
   |                ---   ^^^^^^ expected `u32`, found `&str`
   |                |
   |                expected due to this

error: could not compile `demo` (lib) due to 1 previous error
"""


def main(args):
    if args[:2] == ["new", "contract"]:
        project = Path(args[2])
        project.mkdir()
        (project / "Cargo.toml").write_text('[package]\nname = "%s"\n' % args[2])
        (project / "lib.rs").write_text("#[ink::contract]\nmod flipper {}\n")
        template = args[args.index("--template") + 1]
        print("Generated contract %s from %s" % (args[2], template))
        return 0
    if args[:1] == ["build"]:
        source = Path("lib.rs").read_text()
        sys.stderr.write("   Compiling %s v0.1.0\n" % Path.cwd().name)
        sys.stderr.flush()
        if "SLEEP" in source:
            print("waiting", flush=True)
            time.sleep(30)
        if "SLOW" in source:
            print("halfway", flush=True)
            time.sleep(1)
        if "MISMATCH" in source:
            sys.stderr.write(MISMATCH)
            return 1
        Path(os.environ["CARGO_TARGET_DIR"]).mkdir(parents=True, exist_ok=True)
        print("Contract built: target/ink/contract.contract")
        print("CARGO_TARGET_DIR=" + os.environ["CARGO_TARGET_DIR"])
        print("LEAK=" + os.environ.get("CONTRACT_RUNNER_TEST_SECRET", "absent"))
        return 0
    if args[:1] == ["up"]:
        print("Contract address: 0x5FbDB2315678afecb367f032d93F642f64180aa3")
        return 0
    sys.stderr.write("unknown command: %s\n" % " ".join(args))
    return 2


sys.exit(main(sys.argv[1:]))
'''

@pytest.fixture
def fake_pop(tmp_path) -> Path:
    path = tmp_path / "bin" / "pop"
    path.parent.mkdir(parents=True)
    path.write_text(f"#!{sys.executable}\n{FAKE_POP}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def tmp_job_dir(tmp_path, monkeypatch):
    """Set up temporary job data directory."""
    monkeypatch.setenv("JOB_DATA_DIR", str(tmp_path / "jobs"))
    return tmp_path / "jobs"


@pytest.fixture
def settings(tmp_path, fake_pop) -> Settings:
    return Settings(
        job_data_dir=str(tmp_path / "jobs"),
        contracts_dir=str(tmp_path / "contracts"),
        toolchain_bin=str(fake_pop),
        compile_timeout_sec=20,
        max_concurrent_jobs=4,
        cargo_home=str(tmp_path / "cargo"),
        rustup_home=str(tmp_path / "rustup"),
    )


@pytest.fixture
def service_env(tmp_path, monkeypatch, tmp_job_dir, fake_pop):
    """Point the app's environment-driven settings at the fake toolchain."""
    monkeypatch.setenv("CONTRACTS_DIR", str(tmp_path / "contracts"))
    monkeypatch.setenv("TOOLCHAIN_BIN", str(fake_pop))
    monkeypatch.setenv("COMPILE_TIMEOUT_SEC", "20")
    monkeypatch.setenv("CARGO_HOME", str(tmp_path / "cargo"))
    monkeypatch.setenv("RUSTUP_HOME", str(tmp_path / "rustup"))
    monkeypatch.setenv("JOB_STORE", "memory")
    return tmp_path


@pytest.fixture
def reset_sse_starlette_appstatus_event():
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = None
