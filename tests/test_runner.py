import asyncio
import sys

import pytest

from contract_runner.runner import (
    LaunchFailed,
    OutputChunk,
    ProcessExited,
    ProcessRunner,
)

PATH_ONLY = {"PATH": "/usr/local/bin:/usr/bin:/bin"}


async def _events(runner, code, tmp_path, **kwargs):
    command = [sys.executable, "-c", code]
    return [e async for e in runner.run(command, cwd=tmp_path, env=PATH_ONLY, **kwargs)]


@pytest.mark.asyncio
async def test_streams_both_channels_then_exit(tmp_path):
    code = "import sys; print('out'); print('err', file=sys.stderr)"
    events = await _events(ProcessRunner(), code, tmp_path)

    chunks = [e for e in events if isinstance(e, OutputChunk)]
    assert {(c.channel, c.text) for c in chunks} == {("stdout", "out\n"), ("stderr", "err\n")}
    assert events[-1] == ProcessExited(exit_code=0)


@pytest.mark.asyncio
async def test_non_zero_exit_is_a_normal_exit(tmp_path):
    events = await _events(ProcessRunner(), "raise SystemExit(3)", tmp_path)

    assert events == [ProcessExited(exit_code=3)]


@pytest.mark.asyncio
async def test_missing_binary_is_a_launch_failure(tmp_path):
    runner = ProcessRunner()
    events = [
        e
        async for e in runner.run(
            ["/nonexistent/toolchain"], cwd=tmp_path, env=PATH_ONLY
        )
    ]

    assert len(events) == 1
    assert isinstance(events[0], LaunchFailed)
    assert "/nonexistent/toolchain" in events[0].error


@pytest.mark.asyncio
async def test_environment_is_not_inherited(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTRACT_RUNNER_TEST_SECRET", "s3cret")
    code = "import os; print(os.environ.get('CONTRACT_RUNNER_TEST_SECRET', 'absent'))"
    result = await ProcessRunner().collect(
        [sys.executable, "-c", code], cwd=tmp_path, env=PATH_ONLY
    )

    assert result.ok
    assert result.stdout == "absent\n"


@pytest.mark.asyncio
async def test_output_is_delivered_before_exit(tmp_path):
    code = "import time; print('first', flush=True); time.sleep(30)"
    runner = ProcessRunner()
    events = runner.run([sys.executable, "-c", code], cwd=tmp_path, env=PATH_ONLY)

    first = await events.__anext__()
    assert first == OutputChunk("stdout", "first\n")
    # Closing early kills the child instead of waiting 30 seconds.
    await events.aclose()


@pytest.mark.asyncio
async def test_timeout_kills_process(tmp_path):
    code = "import time; time.sleep(30)"
    events = await _events(ProcessRunner(), code, tmp_path, timeout=0.5)

    assert len(events) == 1
    assert events[0].timed_out is True


@pytest.mark.asyncio
async def test_collect_buffers_output(tmp_path):
    code = "import sys; print('a'); print('b'); sys.stderr.write('c'); sys.exit(1)"
    result = await ProcessRunner().collect(
        [sys.executable, "-c", code], cwd=tmp_path, env=PATH_ONLY
    )

    assert not result.ok
    assert result.exit_code == 1
    assert result.stdout == "a\nb\n"
    assert result.stderr == "c"


@pytest.mark.asyncio
async def test_partial_line_survives_timeout(tmp_path):
    code = (
        "import sys, time; sys.stdout.write('Compiling 3/7'); "
        "sys.stdout.flush(); time.sleep(30)"
    )
    events = await _events(ProcessRunner(), code, tmp_path, timeout=1)

    assert events[0] == OutputChunk("stdout", "Compiling 3/7")
    assert events[-1].timed_out is True


@pytest.mark.asyncio
async def test_partial_line_is_delivered_before_newline(tmp_path):
    code = (
        "import sys, time; sys.stdout.write('progress '); sys.stdout.flush(); "
        "time.sleep(30)"
    )
    runner = ProcessRunner()
    events = runner.run([sys.executable, "-c", code], cwd=tmp_path, env=PATH_ONLY)

    first = await asyncio.wait_for(events.__anext__(), timeout=10)
    assert first == OutputChunk("stdout", "progress ")
    await events.aclose()


@pytest.mark.asyncio
async def test_multibyte_character_split_across_reads(tmp_path):
    code = (
        "import sys, time; out = sys.stdout.buffer; "
        "out.write(b'caf\\xc3'); out.flush(); time.sleep(0.3); "
        "out.write(b'\\xa9\\n'); out.flush()"
    )
    result = await ProcessRunner().collect(
        [sys.executable, "-c", code], cwd=tmp_path, env=PATH_ONLY
    )

    assert result.ok
    assert result.stdout == "café\n"
