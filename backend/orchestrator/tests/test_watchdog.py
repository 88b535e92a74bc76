from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.orchestrator.app.cursor import utcnow
from backend.orchestrator.app.services import ServiceContainer
from backend.orchestrator.app.watchdog import StaleRunWatchdog, stale_message
from backend.orchestrator.db.models import BacktestRun, BacktestStatus, BacktestType

from .utils import create_account, create_algorithm, create_dataset, create_run


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture
async def world(db_session: AsyncSession):
    account = await create_account(db_session)
    algorithm = await create_algorithm(db_session)
    dataset = await create_dataset(db_session)
    return account, algorithm, dataset


async def _running(db_session, world, minutes_ago, run_type=BacktestType.HISTORICAL, **fields):
    account, algorithm, dataset = world
    return await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        status=BacktestStatus.RUNNING, run_type=run_type,
        last_checkpoint_at=utcnow() - timedelta(minutes=minutes_ago), **fields,
    )


def test_stale_message_mentions_last_index() -> None:
    assert stale_message(90, {"lastProcessedIndex": 42}) == (
        "Stale: no heartbeat progress for 90 min. Last index: 42"
    )
    assert stale_message(120, None).endswith("Last index: unknown")


async def test_thresholds_depend_on_run_type(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account = world[0]
    fresh_historical = await _running(db_session, world, 89)
    stale_historical = await _running(db_session, world, 91, checkpoint_state={"lastProcessedIndex": 42})
    fresh_replay = await _running(db_session, world, 119, BacktestType.LIVE_REPLAY)
    stale_replay = await _running(db_session, world, 121, BacktestType.LIVE_REPLAY)
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=0)

    summary = await watchdog.sweep()

    assert summary == {"checked": 2, "failed": 2, "errors": 0}
    statuses = {
        run.id: (await services.lifecycle.get_run(account.id, run.id))["status"]
        for run in (fresh_historical, stale_historical, fresh_replay, stale_replay)
    }
    assert statuses == {
        fresh_historical.id: "RUNNING",
        stale_historical.id: "FAILED",
        fresh_replay.id: "RUNNING",
        stale_replay.id: "FAILED",
    }
    detail = await services.lifecycle.get_run(account.id, stale_historical.id)
    assert detail["errorMessage"] == "Stale: no heartbeat progress for 90 min. Last index: 42"


async def test_runs_without_checkpoint_use_last_update(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, algorithm, dataset = world
    silent = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING,
        updated_at=utcnow() - timedelta(hours=3),
    )
    busy = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING,
    )
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=0)

    await watchdog.sweep()

    assert (await services.lifecycle.get_run(account.id, silent.id))["status"] == "FAILED"
    assert (await services.lifecycle.get_run(account.id, busy.id))["status"] == "RUNNING"


async def test_boot_grace_suppresses_sweeps(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account = world[0]
    stale = await _running(db_session, world, 500)
    clock = FakeClock()
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=600, clock=clock)

    assert watchdog.in_boot_grace() is True
    assert await watchdog.sweep() == {"checked": 0, "failed": 0, "errors": 0}
    assert (await services.lifecycle.get_run(account.id, stale.id))["status"] == "RUNNING"

    clock.now = 601
    assert (await watchdog.sweep())["failed"] == 1


async def test_pending_runs_are_ignored(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, algorithm, dataset = world
    await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        last_checkpoint_at=utcnow() - timedelta(days=1),
    )
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=0)

    assert (await watchdog.sweep())["checked"] == 0


async def test_query_failure_for_one_type_keeps_sweeping(
    services: ServiceContainer, db_session: AsyncSession, world, monkeypatch: pytest.MonkeyPatch
) -> None:
    account = world[0]
    stale_historical = await _running(db_session, world, 200)
    stale_replay = await _running(db_session, world, 200, BacktestType.LIVE_REPLAY)
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=0)
    find_stale = watchdog._find_stale

    async def _flaky_find_stale(run_type, cutoff):
        if run_type is BacktestType.HISTORICAL:
            raise ConnectionError("database unavailable")
        return await find_stale(run_type, cutoff)

    monkeypatch.setattr(watchdog, "_find_stale", _flaky_find_stale)

    summary = await watchdog.sweep()

    assert summary == {"checked": 1, "failed": 1, "errors": 1}
    assert (await services.lifecycle.get_run(account.id, stale_historical.id))["status"] == "RUNNING"
    assert (await services.lifecycle.get_run(account.id, stale_replay.id))["status"] == "FAILED"


async def test_run_requeued_after_detection_is_left_alone(
    services: ServiceContainer, db_session: AsyncSession, world, monkeypatch: pytest.MonkeyPatch
) -> None:
    account = world[0]
    stale = await _running(db_session, world, 200)
    watchdog = StaleRunWatchdog(recorder=services.recorder, boot_grace_seconds=0)
    find_stale = watchdog._find_stale

    async def _find_then_requeue(run_type, cutoff):
        runs = await find_stale(run_type, cutoff)
        await db_session.execute(
            update(BacktestRun).where(BacktestRun.id == stale.id).values(status=BacktestStatus.PENDING)
        )
        await db_session.commit()
        return runs

    monkeypatch.setattr(watchdog, "_find_stale", _find_then_requeue)

    summary = await watchdog.sweep()

    assert summary == {"checked": 1, "failed": 0, "errors": 0}
    detail = await services.lifecycle.get_run(account.id, stale.id)
    assert detail["status"] == "PENDING"
    assert detail["errorMessage"] is None
