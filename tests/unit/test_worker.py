"""Worker retry policy tests with custom tasks."""

import pytest

from agentchain.contracts import TaskMessage
from agentchain.errors import ConfigurationError, TransientExecutionError
from agentchain.tasks import BaseTask, TaskOutcome, TaskResult
from agentchain.tasks.jobs import BUILTIN_TASKS, TaskRegistry
from agentchain.worker import TaskWorker, classify


class RecordingTask(BaseTask):
    failures = []

    async def failed(self, payload, error):
        RecordingTask.failures.append((self.task_type, payload, error))


class AlwaysFails(RecordingTask):
    task_type = "always_fails"

    async def handle(self, payload, message):
        raise RuntimeError("service unavailable")


class Misconfigured(RecordingTask):
    task_type = "misconfigured"

    async def handle(self, payload, message):
        raise ConfigurationError("agent disabled")


class SaysRetry(RecordingTask):
    task_type = "says_retry"

    async def handle(self, payload, message):
        return TaskResult.retry("not ready yet")


class Succeeds(RecordingTask):
    task_type = "succeeds"

    async def handle(self, payload, message):
        return TaskResult.success(echo=payload.get("value"))


@pytest.fixture
def worker(queued_runtime):
    RecordingTask.failures = []
    registry = TaskRegistry([AlwaysFails, Misconfigured, SaysRetry, Succeeds])
    return TaskWorker(queued_runtime, registry)


def test_worker_requires_queue(runtime):
    with pytest.raises(ValueError):
        TaskWorker(runtime)


def test_classify():
    assert classify(TransientExecutionError("x")).outcome == TaskOutcome.RETRY
    assert classify(ConfigurationError("x")).outcome == TaskOutcome.PERMANENT
    assert classify(KeyError("x")).outcome == TaskOutcome.RETRY


def test_builtin_registry():
    registry = TaskRegistry()
    assert registry.types() == sorted(task.task_type for task in BUILTIN_TASKS)
    assert registry.get("nope") is None


@pytest.mark.asyncio
async def test_exception_schedules_retry(worker, transport):
    message = TaskMessage(task_type="always_fails", payload={"id": 1})

    result = await worker.process(message)

    assert result.outcome == TaskOutcome.RETRY
    retried = transport.pending(worker.queue.topic)
    assert len(retried) == 1
    assert retried[0].attempt == 2
    assert retried[0].last_error == "service unavailable"
    assert not retried[0].is_due()
    assert RecordingTask.failures == []


@pytest.mark.asyncio
async def test_final_attempt_calls_failure_handler_once(worker, transport):
    message = TaskMessage(task_type="says_retry", payload={"id": 2}, attempt=3)

    result = await worker.process(message)

    assert result.outcome == TaskOutcome.RETRY
    assert transport.pending(worker.queue.topic) == []
    assert RecordingTask.failures == [("says_retry", {"id": 2}, "not ready yet")]


@pytest.mark.asyncio
async def test_non_retryable_error_fails_permanently(worker, transport):
    result = await worker.process(TaskMessage(task_type="misconfigured", payload={}))

    assert result.outcome == TaskOutcome.PERMANENT
    assert transport.pending(worker.queue.topic) == []
    assert RecordingTask.failures == [("misconfigured", {}, "agent disabled")]


@pytest.mark.asyncio
async def test_unknown_task_type_is_dropped(worker, transport):
    result = await worker.process(TaskMessage(task_type="mystery"))

    assert result.outcome == TaskOutcome.PERMANENT
    assert transport.pending(worker.queue.topic) == []


@pytest.mark.asyncio
async def test_messages_of_cancelled_batches_are_skipped(worker):
    batch = worker.queue.batch(name="group", owner_id="exec-1")
    message = await batch.add("always_fails", {})
    batch.cancel()

    result = await worker.process(message)

    assert result.ok
    assert result.data == {"skipped": True}


@pytest.mark.asyncio
async def test_start_consumes_until_lifespan(worker):
    await worker.queue.enqueue("succeeds", {"value": 1})
    await worker.queue.enqueue("succeeds", {"value": 2})

    await worker.start(lifespan=0.2)

    assert [r.data["echo"] for r in worker.processed] == [1, 2]
    assert worker.processed_count == 2


@pytest.mark.asyncio
async def test_processed_history_is_bounded(queued_runtime):
    worker = TaskWorker(queued_runtime, TaskRegistry([Succeeds]), history=2)
    for value in range(1, 5):
        await worker.queue.enqueue("succeeds", {"value": value})

    await worker.start(lifespan=0.2)

    assert worker.processed_count == 4
    assert [r.data["echo"] for r in worker.processed] == [3, 4]
