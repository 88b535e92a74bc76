from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.orchestrator.app.cursor import utcnow
from backend.orchestrator.app.errors import InternalFailure, NotFound, ValidationFailed
from backend.orchestrator.app.lifecycle import (
    LOW_INTEGRITY_FLAG,
    ArtifactQuery,
    BacktestCreateParams,
    BacktestListFilters,
)
from backend.orchestrator.app.queue import JobState
from backend.orchestrator.app.services import ServiceContainer
from backend.orchestrator.db.models import (
    BacktestSignal,
    BacktestStatus,
    BacktestType,
    ComparisonReportRun,
    SignalType,
    SimulatedOrderFill,
)

from .utils import (
    add_fills,
    add_signals,
    add_snapshots,
    create_account,
    create_algorithm,
    create_dataset,
    create_run,
    utc,
)


@pytest_asyncio.fixture
async def world(db_session: AsyncSession):
    account = await create_account(db_session)
    other = await create_account(db_session, email="other@example.com")
    algorithm = await create_algorithm(db_session)
    dataset = await create_dataset(db_session, start_at=utc(2024, 1, 1), end_at=utc(2024, 12, 31))
    return account, other, algorithm, dataset


def _params(algorithm, dataset, **overrides) -> BacktestCreateParams:
    values = dict(
        name="BTC momentum",
        algorithm_id=algorithm.id,
        market_data_set_id=dataset.id,
        start_date=utc(2024, 2, 1),
        end_date=utc(2024, 3, 1),
        initial_capital=10_000,
    )
    values.update(overrides)
    return BacktestCreateParams(**values)


async def test_create_persists_snapshot_and_enqueues(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    detail = await services.lifecycle.create(
        account.id, _params(algorithm, dataset, deterministic_seed="seed-42", strategy_params={"window": 20})
    )

    assert detail["status"] == "PENDING"
    assert detail["mode"] == "historical"
    assert detail["deterministicSeed"] == "seed-42"
    assert detail["warningFlags"] == []
    assert detail["tradingFee"] == pytest.approx(0.001)
    snapshot = detail["configSnapshot"]
    assert snapshot["dataset"]["id"] == dataset.id
    assert snapshot["algorithm"] == {"id": algorithm.id, "name": algorithm.name}
    assert snapshot["slippage"]["model"] == "fixed"
    assert snapshot["parameters"] == {"window": 20}

    job = await services.historical_queue.get(detail["id"])
    assert job.payload["runId"] == detail["id"]
    assert job.payload["deterministicSeed"] == "seed-42"

    events = services.stream.events_for(detail["id"])
    assert events[0]["kind"] == "status"
    assert events[0]["status"] == "queued"
    assert events[1]["kind"] == "log"


async def test_create_generates_seed_when_missing(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    first = await services.lifecycle.create(account.id, _params(algorithm, dataset))
    second = await services.lifecycle.create(account.id, _params(algorithm, dataset))

    assert first["deterministicSeed"]
    assert first["deterministicSeed"] != second["deterministicSeed"]


async def test_live_replay_routes_to_replay_queue(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    detail = await services.lifecycle.create(
        account.id, _params(algorithm, dataset, type=BacktestType.LIVE_REPLAY)
    )

    assert detail["mode"] == "live_replay"
    assert await services.replay_queue.get(detail["id"]) is not None
    assert await services.historical_queue.get(detail["id"]) is None


async def test_low_integrity_dataset_is_flagged(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, _ = world
    dataset = await create_dataset(
        db_session, label="Patchy", integrity_score=70, start_at=utc(2024, 1, 1), end_at=utc(2024, 12, 31)
    )

    detail = await services.lifecycle.create(account.id, _params(algorithm, dataset))

    assert detail["warningFlags"][0] == LOW_INTEGRITY_FLAG
    assert "Dataset integrity score is below optimal (70%)." in detail["warningFlags"]


async def test_replay_requires_replay_capable_dataset(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, _ = world
    dataset = await create_dataset(
        db_session, replay_capable=False, start_at=utc(2024, 1, 1), end_at=utc(2024, 12, 31)
    )

    with pytest.raises(ValidationFailed, match="not replay capable"):
        await services.lifecycle.create(account.id, _params(algorithm, dataset, type=BacktestType.LIVE_REPLAY))

    historical = await services.lifecycle.create(account.id, _params(algorithm, dataset))
    assert historical["warningFlags"] == []
    page = await services.lifecycle.list_runs(account.id)
    assert len(page["items"]) == 1


async def test_unroutable_types_are_rejected(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    with pytest.raises(ValidationFailed, match="PAPER_TRADING"):
        await services.lifecycle.create(account.id, _params(algorithm, dataset, type=BacktestType.PAPER_TRADING))


async def test_create_reports_missing_references(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    with pytest.raises(NotFound, match="Algorithm not found"):
        await services.lifecycle.create(account.id, _params(algorithm, dataset, algorithm_id="missing"))
    with pytest.raises(NotFound, match="MarketDataSet not found"):
        await services.lifecycle.create(account.id, _params(algorithm, dataset, market_data_set_id="missing"))


async def test_window_outside_dataset_is_rejected(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world

    with pytest.raises(ValidationFailed, match="No overlap"):
        await services.lifecycle.create(
            account.id, _params(algorithm, dataset, start_date=utc(2025, 2, 1), end_date=utc(2025, 3, 1))
        )


async def test_failed_dispatch_marks_run_failed(
    services: ServiceContainer, world, monkeypatch: pytest.MonkeyPatch
) -> None:
    account, _, algorithm, dataset = world

    async def _broken_dispatch(run, options=None):
        raise ConnectionError("queue offline")

    monkeypatch.setattr(services.dispatcher, "dispatch", _broken_dispatch)

    with pytest.raises(InternalFailure):
        await services.lifecycle.create(account.id, _params(algorithm, dataset))

    page = await services.lifecycle.list_runs(account.id)
    assert [item["status"] for item in page["items"]] == ["FAILED"]
    detail = await services.lifecycle.get_run(account.id, page["items"][0]["id"])
    assert detail["errorMessage"] == "Failed to enqueue backtest for execution"


async def test_list_runs_pages_newest_first(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, other, algorithm, dataset = world
    runs = [
        await create_run(
            db_session, account=account, algorithm=algorithm, dataset=dataset,
            name=f"run-{day}", created_at=utc(2024, 5, day),
        )
        for day in range(1, 6)
    ]
    await create_run(db_session, account=other, algorithm=algorithm, dataset=dataset, name="foreign")

    seen = []
    cursor = None
    pages = 0
    while True:
        page = await services.lifecycle.list_runs(account.id, BacktestListFilters(cursor=cursor, limit=2))
        seen.extend(item["name"] for item in page["items"])
        pages += 1
        cursor = page["nextCursor"]
        if cursor is None:
            break

    assert pages == 3
    assert seen == ["run-5", "run-4", "run-3", "run-2", "run-1"]
    assert {run.name for run in runs} == set(seen)


async def test_list_runs_filters(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        name="done", status=BacktestStatus.COMPLETED, created_at=utc(2024, 5, 1),
    )
    await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        name="replay", run_type=BacktestType.LIVE_REPLAY, created_at=utc(2024, 6, 1),
    )

    completed = await services.lifecycle.list_runs(account.id, BacktestListFilters(status=BacktestStatus.COMPLETED))
    replays = await services.lifecycle.list_runs(account.id, BacktestListFilters(type=BacktestType.LIVE_REPLAY))
    recent = await services.lifecycle.list_runs(account.id, BacktestListFilters(created_after=utc(2024, 5, 15)))

    assert [item["name"] for item in completed["items"]] == ["done"]
    assert [item["name"] for item in replays["items"]] == ["replay"]
    assert [item["name"] for item in recent["items"]] == ["replay"]
    assert completed["items"][0]["algorithm"]["id"] == algorithm.id
    assert completed["items"][0]["marketDataSet"]["id"] == dataset.id


async def test_runs_are_private_to_their_owner(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, other, algorithm, dataset = world
    run = await create_run(db_session, account=account, algorithm=algorithm, dataset=dataset)

    with pytest.raises(NotFound):
        await services.lifecycle.get_run(other.id, run.id)
    with pytest.raises(NotFound):
        await services.lifecycle.cancel(other.id, run.id)


async def test_cancel_removes_queued_job(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world
    created = await services.lifecycle.create(account.id, _params(algorithm, dataset))

    detail = await services.lifecycle.cancel(account.id, created["id"])

    assert detail["status"] == "CANCELLED"
    assert detail["errorMessage"] == "User requested cancellation"
    assert await services.historical_queue.get(created["id"]) is None
    assert services.stream.events_for(created["id"])[-1]["status"] == "cancelled"


async def test_cancel_rejects_finished_runs(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )

    with pytest.raises(ValidationFailed, match="Can only cancel"):
        await services.lifecycle.cancel(account.id, run.id)


async def test_pause_sets_flag_for_running_replay(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    replay = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        run_type=BacktestType.LIVE_REPLAY, status=BacktestStatus.RUNNING,
    )

    detail = await services.lifecycle.pause(account.id, replay.id)

    assert detail["status"] == "RUNNING"
    assert await services.pause_flags.is_pause_requested(replay.id) is True


async def test_pause_rejections(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    historical = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING
    )
    pending_replay = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, run_type=BacktestType.LIVE_REPLAY
    )

    with pytest.raises(ValidationFailed, match="Only live replay"):
        await services.lifecycle.pause(account.id, historical.id)
    with pytest.raises(ValidationFailed, match="Can only pause running"):
        await services.lifecycle.pause(account.id, pending_replay.id)
    assert await services.pause_flags.is_pause_requested(historical.id) is False


async def test_resume_keeps_fresh_checkpoint(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        run_type=BacktestType.LIVE_REPLAY, status=BacktestStatus.PAUSED,
        checkpoint_state={"lastProcessedIndex": 9, "persistedCounts": {"signals": 4}},
        last_checkpoint_at=utcnow() - timedelta(hours=1),
        processed_timestamp_count=10, total_timestamp_count=40,
    )
    await services.pause_flags.set_pause_flag(run.id)

    detail = await services.lifecycle.resume(account.id, run.id)

    assert detail["status"] == "PENDING"
    assert detail["checkpoint"]["lastProcessedIndex"] == 9
    assert detail["processedTimestampCount"] == 10
    assert await services.pause_flags.is_pause_requested(run.id) is False
    assert (await services.replay_queue.get(run.id)).payload["runId"] == run.id
    queued = services.stream.events_for(run.id)[-1]
    assert queued["metadata"] == {"resumed": True, "hasCheckpoint": True, "checkpointIndex": 9}


async def test_resume_discards_stale_checkpoint(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset,
        status=BacktestStatus.FAILED, error_message="worker crashed",
        checkpoint_state={"lastProcessedIndex": 99},
        last_checkpoint_at=utcnow() - timedelta(days=8),
        processed_timestamp_count=100, total_timestamp_count=400,
    )

    detail = await services.lifecycle.resume(account.id, run.id)

    assert detail["checkpoint"] is None
    assert detail["lastCheckpointAt"] is None
    assert detail["processedTimestampCount"] == 0
    assert detail["errorMessage"] is None


async def test_resume_replaces_retained_job(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.CANCELLED
    )
    await services.historical_queue.enqueue(run.id, "execute-backtest", {"stale": True})

    await services.lifecycle.resume(account.id, run.id)

    job = await services.historical_queue.get(run.id)
    assert "stale" not in job.payload
    assert job.payload["runId"] == run.id


async def test_resume_rejects_active_runs(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )

    with pytest.raises(ValidationFailed, match="can be resumed"):
        await services.lifecycle.resume(account.id, run.id)


async def test_resume_waits_for_stopping_execution(services: ServiceContainer, world) -> None:
    account, _, algorithm, dataset = world
    created = await services.lifecycle.create(account.id, _params(algorithm, dataset))
    await services.historical_queue.reserve()
    cancelled = await services.lifecycle.cancel(account.id, created["id"])
    assert cancelled["status"] == "CANCELLED"

    with pytest.raises(ValidationFailed, match="still stopping"):
        await services.lifecycle.resume(account.id, created["id"])
    assert (await services.lifecycle.get_run(account.id, created["id"]))["status"] == "CANCELLED"

    await services.historical_queue.complete(created["id"])
    detail = await services.lifecycle.resume(account.id, created["id"])

    assert detail["status"] == "PENDING"
    job = await services.historical_queue.get(created["id"])
    assert job.state is JobState.WAITING


async def test_rejected_resume_enqueue_marks_run_failed(
    services: ServiceContainer, db_session: AsyncSession, world, monkeypatch: pytest.MonkeyPatch
) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.CANCELLED
    )

    async def _rejected_dispatch(run, options=None):
        return False

    monkeypatch.setattr(services.dispatcher, "dispatch", _rejected_dispatch)

    with pytest.raises(InternalFailure, match="Failed to enqueue"):
        await services.lifecycle.resume(account.id, run.id)

    detail = await services.lifecycle.get_run(account.id, run.id)
    assert detail["status"] == "FAILED"
    assert detail["errorMessage"] == "Failed to enqueue backtest for execution"


async def test_update_changes_metadata_only_when_idle(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    running = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING
    )
    done = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )

    with pytest.raises(ValidationFailed):
        await services.lifecycle.update(account.id, running.id, name="renamed")
    detail = await services.lifecycle.update(account.id, done.id, name="renamed", description="notes")

    assert detail["name"] == "renamed"
    assert detail["description"] == "notes"


async def test_delete_removes_run_and_artifacts(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )
    peer = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )
    await add_signals(db_session, run, 3)
    await add_fills(db_session, run, 2)
    await add_snapshots(db_session, run, [10_000, 10_100])
    await services.lifecycle.create_comparison_report(account.id, [run.id, peer.id])

    await services.lifecycle.delete(account.id, run.id)

    with pytest.raises(NotFound):
        await services.lifecycle.get_run(account.id, run.id)
    for model, column in (
        (BacktestSignal, BacktestSignal.backtest_id),
        (SimulatedOrderFill, SimulatedOrderFill.backtest_id),
        (ComparisonReportRun, ComparisonReportRun.backtest_id),
    ):
        count = await db_session.scalar(select(func.count()).select_from(model).where(column == run.id))
        assert count == 0


async def test_delete_rejects_running_runs(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING
    )

    with pytest.raises(ValidationFailed, match="Cannot delete a running backtest"):
        await services.lifecycle.delete(account.id, run.id)


async def test_progress_reporting(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, _, algorithm, dataset = world
    pending = await create_run(db_session, account=account, algorithm=algorithm, dataset=dataset)
    running = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING,
        processed_timestamp_count=25, total_timestamp_count=100,
    )
    failed = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.FAILED,
        error_message="boom",
    )
    completed = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED,
        processed_timestamp_count=50, total_timestamp_count=100,
    )

    assert (await services.lifecycle.get_progress(account.id, pending.id))["message"] == "Backtest queued for processing"
    assert (await services.lifecycle.get_progress(account.id, running.id))["progress"] == 25.0
    failure = await services.lifecycle.get_progress(account.id, failed.id)
    assert failure["message"] == "Backtest failed: boom"
    assert failure["progress"] == 0.0
    assert (await services.lifecycle.get_progress(account.id, completed.id))["progress"] == 100.0


async def test_performance_requires_completed_run(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    running = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.RUNNING
    )
    done = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED,
        final_value=11_000, total_return=0.1,
    )
    await add_snapshots(db_session, done, [10_000, 10_500, 11_000])
    await add_fills(db_session, done, 3)

    with pytest.raises(ValidationFailed, match="must be completed"):
        await services.lifecycle.get_performance(account.id, running.id)
    performance = await services.lifecycle.get_performance(account.id, done.id)

    assert performance["finalValue"] == pytest.approx(11_000)
    assert performance["totalTrades"] == 0
    assert performance["sharpeRatio"] == 0.0
    assert [point["portfolioValue"] for point in performance["performanceHistory"]] == [10_000, 10_500, 11_000]
    assert len(performance["recentTrades"]) == 3
    assert performance["recentTrades"][0]["averagePrice"] == pytest.approx(102.0)


async def test_signal_pages_follow_timestamp_cursor(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, _, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )
    await add_signals(db_session, run, 15)

    everything = await services.lifecycle.list_signals(account.id, run.id)
    first = await services.lifecycle.list_signals(account.id, run.id, ArtifactQuery(page_size=1))
    second = await services.lifecycle.list_signals(
        account.id, run.id, ArtifactQuery(page_size=10, cursor=first["nextCursor"])
    )
    entries = await services.lifecycle.list_signals(account.id, run.id, ArtifactQuery(signal_type=SignalType.ENTRY))

    assert len(everything["items"]) == 15
    assert everything["nextCursor"] is None
    assert len(first["items"]) == 10
    assert first["nextCursor"] is not None
    assert len(second["items"]) == 5
    assert second["nextCursor"] is None
    assert second["items"][0]["price"] == pytest.approx(110.0)
    assert len(entries["items"]) == 8


async def test_trade_listing_filters_by_instrument(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, other, algorithm, dataset = world
    run = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED
    )
    await add_fills(db_session, run, 4)

    page = await services.lifecycle.list_trades(account.id, run.id, ArtifactQuery(instrument="ETHUSDT"))

    assert [item["instrument"] for item in page["items"]] == ["ETHUSDT", "ETHUSDT"]
    with pytest.raises(NotFound):
        await services.lifecycle.list_trades(other.id, run.id)


async def test_compare_summarises_best_metrics(services: ServiceContainer, db_session: AsyncSession, world) -> None:
    account, other, algorithm, dataset = world
    first = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED,
        name="first", total_return=0.12, sharpe_ratio=1.1, max_drawdown=0.2,
    )
    second = await create_run(
        db_session, account=account, algorithm=algorithm, dataset=dataset, status=BacktestStatus.COMPLETED,
        name="second", total_return=0.05, sharpe_ratio=1.8, max_drawdown=0.1,
    )
    foreign = await create_run(db_session, account=other, algorithm=algorithm, dataset=dataset)
    await add_snapshots(db_session, first, [10_000, 11_200])

    view = await services.lifecycle.compare(account.id, [second.id, first.id])

    assert view["id"] is None
    assert [entry["run"]["name"] for entry in view["runs"]] == ["second", "first"]
    assert view["summary"] == pytest.approx({"bestReturn": 0.12, "bestSharpe": 1.8, "lowestDrawdown": 0.1})
    assert len(view["runs"][1]["snapshots"]) == 2
    assert view["createdBy"]["id"] == account.id

    with pytest.raises(ValidationFailed, match="at least two"):
        await services.lifecycle.compare(account.id, [first.id, first.id])
    with pytest.raises(NotFound):
        await services.lifecycle.compare(account.id, [first.id, foreign.id])


async def test_comparison_reports_are_saved_per_creator(
    services: ServiceContainer, db_session: AsyncSession, world
) -> None:
    account, other, algorithm, dataset = world
    first = await create_run(db_session, account=account, algorithm=algorithm, dataset=dataset, name="first")
    second = await create_run(db_session, account=account, algorithm=algorithm, dataset=dataset, name="second")

    created = await services.lifecycle.create_comparison_report(
        account.id, [second.id, first.id], name="Q1 review", filters={"status": "COMPLETED"}
    )
    loaded = await services.lifecycle.get_comparison_report(account.id, created["id"])

    assert created["id"] is not None
    assert loaded["name"] == "Q1 review"
    assert loaded["filters"] == {"status": "COMPLETED"}
    assert [entry["run"]["name"] for entry in loaded["runs"]] == ["second", "first"]
    with pytest.raises(NotFound):
        await services.lifecycle.get_comparison_report(other.id, created["id"])
