import fakeredis
import pytest
import pytest_asyncio

from backend.orchestrator.app.dispatcher import JobDispatcher
from backend.orchestrator.app.queue import JobOptions, JobState, RedisTaskQueue
from backend.orchestrator.db.models import BacktestType

from .test_queue_dispatcher import _run


QUEUE_NAME = "backtest-historical"


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


def _queue(server: fakeredis.FakeServer) -> RedisTaskQueue:
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    return RedisTaskQueue(QUEUE_NAME, client=client)


@pytest_asyncio.fixture
async def queue(server: fakeredis.FakeServer):
    queue = _queue(server)
    try:
        yield queue
    finally:
        await queue.close()


def test_queue_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisTaskQueue(QUEUE_NAME)


async def test_jobs_move_through_reserve_and_complete(queue: RedisTaskQueue) -> None:
    assert await queue.enqueue("job", "work", {"n": 1}) is True
    assert await queue.enqueue("job", "work", {"n": 2}) is False

    job = await queue.reserve()
    assert job.id == "job"
    assert job.payload == {"n": 1}
    assert job.state is JobState.ACTIVE
    assert await queue.active_count() == 1

    await queue.complete("job")

    assert await queue.active_count() == 0
    assert (await queue.get("job")).state is JobState.COMPLETED
    assert (await queue.counts())["completed"] == 1


async def test_stalled_job_is_released_by_a_new_consumer(server: fakeredis.FakeServer) -> None:
    crashed = _queue(server)
    await crashed.enqueue("job", "work", {}, JobOptions(attempts=2))
    await crashed.reserve()

    restarted = _queue(server)
    assert await restarted.reserve() is None
    assert await restarted.release_stalled() == ["job"]
    assert await restarted.active_count() == 0

    job = await restarted.reserve()
    assert job.id == "job"
    assert job.attempts_made == 2

    await crashed.close()
    await restarted.close()


async def test_release_stalled_skips_jobs_no_longer_active(queue: RedisTaskQueue) -> None:
    await queue.enqueue("job", "work", {})
    await queue.reserve()
    await queue.complete("job")

    assert await queue.release_stalled() == []
    assert await queue.reserve() is None


async def test_restarted_dispatcher_resumes_drained_queue(server: fakeredis.FakeServer) -> None:
    first = _queue(server)
    previous = JobDispatcher({BacktestType.HISTORICAL: first})
    await previous.dispatch(_run("waiting"))
    await previous.drain(timeout=0, poll_interval=0.01)
    assert await first.is_paused() is True

    second = _queue(server)
    dispatcher = JobDispatcher({BacktestType.HISTORICAL: second})
    assert await second.reserve() is None

    assert await dispatcher.start() == {QUEUE_NAME: 0}
    assert (await second.reserve()).id == "waiting"

    await first.close()
    await second.close()


async def test_forced_remove_clears_active_job(queue: RedisTaskQueue) -> None:
    await queue.enqueue("job", "work", {})
    await queue.reserve()

    assert await queue.remove("job") is False
    assert await queue.remove("job", force=True) is True

    assert await queue.get("job") is None
    assert await queue.active_count() == 0
    assert await queue.enqueue("job", "work", {}) is True
