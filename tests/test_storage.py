import asyncio

import pytest

from contract_runner.errors import JobNotFoundError, JobStateError
from contract_runner.models import JobStatus, LogChannel
from contract_runner.storage import TRUNCATION_NOTICE, InMemoryJobStore


@pytest.mark.asyncio
async def test_create_and_get():
    store = InMemoryJobStore()
    record = await store.create("demo", "fn main() {}")

    assert record.status is JobStatus.queued
    assert record.started_at is None and record.completed_at is None
    assert (await store.get(record.id)) == record
    logs = await store.get_logs(record.id)
    assert logs.entries == [] and logs.stdout == "" and logs.stderr == ""


@pytest.mark.asyncio
async def test_unknown_id_is_not_found_and_not_created():
    store = InMemoryJobStore()

    with pytest.raises(JobNotFoundError):
        await store.get("missing")
    with pytest.raises(JobNotFoundError):
        await store.update("missing", status=JobStatus.running)
    with pytest.raises(JobNotFoundError):
        await store.append_log("missing", LogChannel.info, "x")
    assert await store.list_jobs() == []


@pytest.mark.asyncio
async def test_append_log_aggregates_output_channels():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")
    await store.mark_running(job.id)

    await store.append_log(job.id, LogChannel.info, "starting\n")
    await store.append_log(job.id, LogChannel.stdout, "a\n")
    await store.append_log(job.id, LogChannel.stderr, "warn\n")
    await store.append_log(job.id, LogChannel.stdout, "b\n")

    logs = await store.get_logs(job.id)
    assert [e.seq for e in logs.entries] == [0, 1, 2, 3]
    assert [e.channel for e in logs.entries] == [
        LogChannel.info,
        LogChannel.stdout,
        LogChannel.stderr,
        LogChannel.stdout,
    ]
    assert logs.stdout == "a\nb\n"
    assert logs.stderr == "warn\n"


@pytest.mark.asyncio
async def test_status_is_monotonic_and_terminal_is_immutable():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")

    with pytest.raises(JobStateError):
        await store.mark_completed(job.id, 0)

    running = await store.mark_running(job.id)
    done = await store.mark_completed(job.id, 0)
    assert running.started_at <= done.completed_at

    with pytest.raises(JobStateError):
        await store.mark_running(job.id)
    with pytest.raises(JobStateError):
        await store.update(job.id, subject_name="other")
    with pytest.raises(JobStateError):
        await store.append_log(job.id, LogChannel.stdout, "late\n")
    assert (await store.get(job.id)) == done


@pytest.mark.asyncio
async def test_list_jobs_in_insertion_order():
    store = InMemoryJobStore()
    ids = [(await store.create(f"c{i}", "src")).id for i in range(3)]

    assert [job.id for job in await store.list_jobs()] == ids


@pytest.mark.asyncio
async def test_subscribe_replays_then_follows_until_terminal():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")
    await store.mark_running(job.id)
    await store.append_log(job.id, LogChannel.info, "before\n")

    received = []

    async def consume():
        async for entry in store.subscribe(job.id):
            received.append(entry.text)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await store.append_log(job.id, LogChannel.stdout, "after\n")
    await store.mark_completed(job.id, 0)
    await asyncio.wait_for(consumer, timeout=5)

    assert received == ["before\n", "after\n"]
    assert store.subscriber_count(job.id) == 0


@pytest.mark.asyncio
async def test_subscribers_fan_out_independently():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")
    await store.mark_running(job.id)

    async def consume():
        return [entry.seq async for entry in store.subscribe(job.id)]

    first = asyncio.create_task(consume())
    second = asyncio.create_task(consume())
    await asyncio.sleep(0)
    for i in range(5):
        await store.append_log(job.id, LogChannel.stdout, f"{i}\n")
    await store.mark_failed(job.id, "boom", exit_code=1)

    assert await first == [0, 1, 2, 3, 4]
    assert await second == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_subscribe_to_terminal_job_replays_and_ends():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")
    await store.mark_running(job.id)
    await store.append_log(job.id, LogChannel.stdout, "done\n")
    await store.mark_completed(job.id, 0)

    entries = [entry async for entry in store.subscribe(job.id)]

    assert [e.text for e in entries] == ["done\n"]


@pytest.mark.asyncio
async def test_closed_subscriber_is_removed():
    store = InMemoryJobStore()
    job = await store.create("demo", "src")
    await store.mark_running(job.id)
    await store.append_log(job.id, LogChannel.info, "hello\n")

    stream = store.subscribe(job.id)
    assert (await stream.__anext__()).text == "hello\n"
    assert store.subscriber_count(job.id) == 1

    await stream.aclose()
    assert store.subscriber_count(job.id) == 0
    await store.append_log(job.id, LogChannel.stdout, "still running\n")


@pytest.mark.asyncio
async def test_output_beyond_budget_is_relayed_but_not_retained():
    store = InMemoryJobStore(max_retained_bytes=10)
    job = await store.create("demo", "src")
    await store.mark_running(job.id)

    live = []

    async def consume():
        async for entry in store.subscribe(job.id):
            live.append(entry.text)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await store.append_log(job.id, LogChannel.stdout, "12345\n")
    await store.append_log(job.id, LogChannel.stdout, "67890\n")
    await store.append_log(job.id, LogChannel.stderr, "x\n")
    await store.append_log(job.id, LogChannel.error, "failed\n")
    await store.mark_failed(job.id, "failed", exit_code=1)
    await asyncio.wait_for(consumer, timeout=5)

    logs = await store.get_logs(job.id)
    assert logs.truncated is True
    assert logs.stdout == "12345\n"
    assert logs.stderr == ""
    assert [e.text for e in logs.entries] == ["12345\n", TRUNCATION_NOTICE, "failed\n"]
    assert live == ["12345\n", TRUNCATION_NOTICE, "67890\n", "x\n", "failed\n"]
    assert (await store.get(job.id)).output_truncated is True
