"""Tests for AutomationScheduler cursor handling and loop behavior."""

import asyncio

import pytest

from careflow.adapters.scheduler.daemon import AutomationScheduler
from careflow.core import records
from careflow.core.models import ProcessResult
from careflow.tests.fakes import FakeAutomationPort, FakeRecordStore


def batch(seen: int, last_sequence: int, failed: int = 0) -> ProcessResult:
    return ProcessResult(
        events_seen=seen,
        processed=seen - failed,
        duplicates=0,
        unhandled=0,
        failed=failed,
        last_sequence=last_sequence,
    )


@pytest.fixture
def automation() -> FakeAutomationPort:
    """Create a fake automation port."""
    return FakeAutomationPort()


@pytest.fixture
def cursor_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.mark.asyncio
async def test_cycle_advances_and_saves_cursor(
    automation: FakeAutomationPort, cursor_store: FakeRecordStore
) -> None:
    scheduler = AutomationScheduler(automation, batch_size=10, cursor_store=cursor_store)
    automation.results.append(batch(3, last_sequence=3))

    await scheduler.run_cycle()
    await scheduler.run_cycle()

    assert automation.process_calls == [(0, 10), (3, 10)]
    assert scheduler.cursor == 3
    saved = await cursor_store.get(records.AUTOMATION_STATE, records.SCHEDULER_CURSOR_ID)
    assert saved == {"id": records.SCHEDULER_CURSOR_ID, "sequence": 3}
    # The empty second batch does not rewrite the cursor
    assert cursor_store.set_calls == [(records.AUTOMATION_STATE, records.SCHEDULER_CURSOR_ID)]


@pytest.mark.asyncio
async def test_failed_batch_holds_cursor_then_gives_up(automation: FakeAutomationPort) -> None:
    scheduler = AutomationScheduler(automation, max_retry_cycles=2)
    automation.results.extend(
        [
            batch(5, last_sequence=5, failed=1),
            batch(5, last_sequence=5, failed=1),
            batch(5, last_sequence=5, failed=1),
        ]
    )

    await scheduler.run_cycle()
    assert scheduler.cursor == 0
    await scheduler.run_cycle()
    assert scheduler.cursor == 0
    await scheduler.run_cycle()

    assert scheduler.cursor == 5
    assert [after for after, _ in automation.process_calls] == [0, 0, 0]


@pytest.mark.asyncio
async def test_retry_succeeds_and_resets(automation: FakeAutomationPort) -> None:
    scheduler = AutomationScheduler(automation, max_retry_cycles=3)
    automation.results.extend(
        [batch(4, last_sequence=4, failed=2), batch(4, last_sequence=4), batch(1, last_sequence=9, failed=1)]
    )

    await scheduler.run_cycle()
    await scheduler.run_cycle()
    assert scheduler.cursor == 4

    await scheduler.run_cycle()
    assert scheduler.cursor == 4


@pytest.mark.asyncio
async def test_start_requires_automation() -> None:
    scheduler = AutomationScheduler()

    with pytest.raises(ValueError, match="automation must be set"):
        await scheduler.start()


@pytest.mark.asyncio
async def test_start_resumes_from_saved_cursor(
    automation: FakeAutomationPort, cursor_store: FakeRecordStore
) -> None:
    await cursor_store.set(
        records.AUTOMATION_STATE, records.SCHEDULER_CURSOR_ID, {"sequence": 42}
    )
    scheduler = AutomationScheduler(
        automation, interval_seconds=0.01, cursor_store=cursor_store
    )

    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.05)
    await scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert automation.process_calls[0] == (42, 100)
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_loop_purges_periodically(automation: FakeAutomationPort) -> None:
    scheduler = AutomationScheduler(
        automation, interval_seconds=0.01, purge_every_cycles=2, retention_days=7
    )

    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.1)
    await scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert len(automation.process_calls) >= 2
    assert automation.purge_calls
    assert set(automation.purge_calls) == {7}


@pytest.mark.asyncio
async def test_loop_survives_cycle_errors(automation: FakeAutomationPort) -> None:
    automation.should_fail = True
    scheduler = AutomationScheduler(automation, interval_seconds=0.01)

    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.08)
    assert scheduler.running is True
    assert scheduler._consecutive_failures >= 2

    await scheduler.stop()
    await asyncio.wait_for(task, timeout=1)
    assert task.exception() is None


@pytest.mark.asyncio
async def test_full_batch_skips_pause(automation: FakeAutomationPort) -> None:
    scheduler = AutomationScheduler(automation, interval_seconds=60, batch_size=2)
    automation.results.extend([batch(2, last_sequence=2), batch(2, last_sequence=4)])

    task = asyncio.create_task(scheduler.start())
    await asyncio.sleep(0.05)
    await scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    # Two full batches run back to back; the third (empty) one waits on the interval
    assert [after for after, _ in automation.process_calls] == [0, 2, 4]
    assert scheduler.cursor == 4
