from datetime import timedelta

import pytest

from agentchain.config import TaskConfig
from agentchain.constants import CANCELLED_BATCH_HISTORY
from agentchain.tasks import Batch, TaskQueue
from agentchain.utils.retry import compute_backoff


@pytest.fixture
def queue(transport):
    return TaskQueue(transport, topic="tasks")


def test_compute_backoff():
    assert compute_backoff(1) == 60
    assert compute_backoff(3, base=10) == 10
    assert compute_backoff(3, base=10, strategy="exponential") == 40
    assert 10 <= compute_backoff(1, base=10, jitter=5) <= 15
    with pytest.raises(ValueError):
        compute_backoff(1, strategy="linear")


@pytest.mark.asyncio
async def test_enqueue_applies_standard_retry_policy(queue, transport):
    message = await queue.enqueue("process_chain_trigger", {"trigger_id": "t-1"})

    assert message.max_attempts == 3
    assert message.backoff_seconds == 60
    assert message.attempt == 1
    assert transport.pending("tasks") == [message]


@pytest.mark.asyncio
async def test_enqueue_overrides_and_delay(transport):
    queue = TaskQueue(transport, topic="tasks", config=TaskConfig(max_attempts=5, backoff_seconds=0))

    message = await queue.enqueue("x", {}, delay_seconds=30)
    assert message.max_attempts == 5
    assert message.backoff_seconds == 0
    assert message.available_at == message.timestamp + timedelta(seconds=30)

    custom = await queue.enqueue("x", {}, max_attempts=1, backoff_seconds=5)
    assert custom.max_attempts == 1
    assert custom.backoff_seconds == 5


@pytest.mark.asyncio
async def test_retry_republishes_next_attempt_after_backoff(queue, transport):
    message = await queue.enqueue("execute_chain_step", {"chain_execution_id": "e-1"})

    retry = await queue.retry(message, "workflow failed")

    assert retry.attempt == 2
    assert retry.last_error == "workflow failed"
    assert retry.payload == message.payload
    delay = (retry.available_at - message.timestamp).total_seconds()
    assert 60 <= delay < 65
    assert transport.pending("tasks")[-1].message_id == retry.message_id


@pytest.mark.asyncio
async def test_batch_members_and_cancellation(queue):
    batch = queue.batch(name="parallel", owner_id="exec-1")

    message = await batch.add("execute_chain_step", {"step_index": 1})
    batch.track(2)

    assert message.batch_id == batch.id
    assert batch.members == [message.message_id, 2]
    assert queue.get_batch(batch.id) is batch
    assert not queue.is_cancelled(batch.id)

    assert queue.cancel_batches("exec-1") == 1
    assert batch.cancelled()
    assert queue.is_cancelled(batch.id)
    # already cancelled batches are not counted again
    assert queue.cancel_batches("exec-1") == 0
    assert queue.get_batch(batch.id) is None


def test_finished_owners_release_their_batches(queue):
    kept = queue.batch(name="a", owner_id="exec-1")
    other = queue.batch(name="b", owner_id="exec-2")

    assert queue.forget_batches("exec-1") == [kept]

    assert queue.batches_for("exec-1") == []
    assert queue.get_batch(kept.id) is None
    assert not queue.is_cancelled(kept.id)
    assert queue.batches_for("exec-2") == [other]


def test_cancelled_ids_are_bounded(queue):
    batches = [
        queue.batch(owner_id=f"exec-{n}") for n in range(CANCELLED_BATCH_HISTORY + 1)
    ]
    for batch in batches:
        queue.cancel_batches(batch.owner_id)

    assert queue._batches == {}
    assert not queue.is_cancelled(batches[0].id)
    assert queue.is_cancelled(batches[-1].id)


def test_cancel_is_idempotent():
    batch = Batch(name="local")
    batch.track("step-1")
    batch.cancel()
    first_cancel = batch.cancelled_at
    batch.cancel()

    assert batch.cancelled()
    assert batch.cancelled_at == first_cancel


@pytest.mark.asyncio
async def test_batch_add_requires_queue():
    with pytest.raises(RuntimeError):
        await Batch(name="local").add("x", {})
