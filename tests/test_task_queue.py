import pytest

from loopgate import store as keys
from loopgate.errors import DuplicateTaskError, TaskNotFoundError
from loopgate.task_queue import MAX_COMPLETED, MAX_FAILED, Task, TaskQueue, TaskStatus


@pytest.mark.asyncio
async def test_dequeue_follows_priority_then_insertion_order(queue: TaskQueue) -> None:
    for task_id, priority in (("a", 3), ("b", 9), ("c", 1), ("d", 9)):
        await queue.enqueue(Task(id=task_id, priority=priority))

    order = []
    while (task := await queue.dequeue()) is not None:
        order.append(task.id)

    assert order == ["b", "d", "a", "c"]


@pytest.mark.asyncio
async def test_dequeue_empty_queue_returns_none(queue: TaskQueue) -> None:
    assert await queue.dequeue() is None
    assert await queue.next_eligible() is None


@pytest.mark.asyncio
async def test_dequeue_marks_task_in_progress(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="a"))
    task = await queue.dequeue()

    assert task is not None
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.started_at is not None
    assert (await queue.counts())["in-progress"] == 1


@pytest.mark.asyncio
async def test_every_task_lives_in_exactly_one_partition(queue: TaskQueue, store) -> None:
    for task_id in ("a", "b", "c", "d"):
        await queue.enqueue(Task(id=task_id))
    await queue.dequeue()
    await queue.transition_to_completed("a")
    await queue.transition_to_in_progress("b")
    await queue.transition_to_failed("b", "boom")
    await queue.move_to_dead_letter("c", "gave up")

    document = await store.read(keys.QUEUE)
    seen = [entry["id"] for name in document for entry in document[name]]
    assert sorted(seen) == ["a", "b", "c", "d"]
    assert [e["id"] for e in document["pending"]] == ["d"]
    assert [e["id"] for e in document["dead_letter"]] == ["c"]


@pytest.mark.asyncio
async def test_completed_retention_keeps_most_recent(queue: TaskQueue) -> None:
    total = MAX_COMPLETED + 5
    for i in range(total):
        await queue.enqueue(Task(id=f"t{i:03d}"))
    for i in range(total):
        await queue.transition_to_completed(f"t{i:03d}")

    state = await queue.load()
    assert len(state.completed) == MAX_COMPLETED
    assert state.completed[0].id == "t005"
    assert state.completed[-1].id == f"t{total - 1:03d}"


@pytest.mark.asyncio
async def test_failed_retention_cap(queue: TaskQueue) -> None:
    total = MAX_FAILED + 3
    for i in range(total):
        await queue.enqueue(Task(id=f"f{i:03d}"))
    for i in range(total):
        await queue.transition_to_failed(f"f{i:03d}", "error")

    state = await queue.load()
    assert len(state.failed) == MAX_FAILED
    assert state.failed[0].id == "f003"


@pytest.mark.asyncio
async def test_failed_transition_records_error_and_attempts(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="a"))
    await queue.dequeue()
    failed = await queue.transition_to_failed("a", "exit code 2")

    assert failed.attempts == 1
    assert failed.last_error == "exit code 2"
    assert failed.result == {"status": "failure", "error": "exit code 2"}

    requeued = await queue.requeue("a")
    assert requeued.status == TaskStatus.PENDING
    assert requeued.attempts == 1
    assert (await queue.next_eligible()).id == "a"


@pytest.mark.asyncio
async def test_completed_default_result(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="a"))
    done = await queue.transition_to_completed("a")

    assert done.result == {"status": "success"}
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_dependencies_hold_back_task_until_completed(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="base", priority=1))
    await queue.enqueue(Task(id="follow-up", priority=9, dependencies=["base"]))

    first = await queue.next_eligible()
    assert first is not None and first.id == "base"
    assert await queue.next_eligible() is None

    await queue.transition_to_completed("base")
    second = await queue.next_eligible()
    assert second is not None and second.id == "follow-up"


@pytest.mark.asyncio
async def test_unknown_dependency_counts_as_satisfied(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="orphan", dependencies=["never-queued"]))

    task = await queue.next_eligible()
    assert task is not None and task.id == "orphan"


@pytest.mark.asyncio
async def test_duplicate_ids_rejected(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="a"))
    await queue.transition_to_completed("a")

    with pytest.raises(DuplicateTaskError):
        await queue.enqueue(Task(id="a"))


@pytest.mark.asyncio
async def test_unknown_task_transition_raises(queue: TaskQueue) -> None:
    with pytest.raises(TaskNotFoundError):
        await queue.transition_to_completed("missing")


@pytest.mark.asyncio
async def test_reconcile_returns_orphans_to_pending(store) -> None:
    first = TaskQueue(store)
    await first.enqueue(Task(id="a", priority=2))
    await first.enqueue(Task(id="b", priority=8))
    await first.dequeue()

    restarted = TaskQueue(store)
    orphans = await restarted.reconcile()

    assert [t.id for t in orphans] == ["b"]
    state = await restarted.load()
    assert [t.id for t in state.pending] == ["b", "a"]
    assert state.in_progress == []
    assert state.pending[0].started_at is None


@pytest.mark.asyncio
async def test_corrupt_queue_document_reads_as_empty(queue: TaskQueue, store) -> None:
    await store.write_raw(keys.QUEUE, "{not json")

    assert await queue.counts() == {status.value: 0 for status in TaskStatus}
    await queue.enqueue(Task(id="fresh"))
    assert (await queue.dequeue()).id == "fresh"


@pytest.mark.asyncio
async def test_unreadable_entries_are_dropped(queue: TaskQueue, store) -> None:
    await store.write(
        keys.QUEUE,
        {"pending": [{"type": "lint"}, Task(id="ok").to_dict()], "completed": "garbage"},
    )

    state = await queue.load()
    assert [t.id for t in state.pending] == ["ok"]
    assert state.completed == []


@pytest.mark.asyncio
async def test_completion_history_filters_by_type(queue: TaskQueue) -> None:
    await queue.enqueue(Task(id="a", type="lint"))
    await queue.enqueue(Task(id="b", type="deploy"))
    await queue.transition_to_completed("a")
    await queue.transition_to_completed("b")

    assert [t.id for t in await queue.completion_history("lint")] == ["a"]
    assert len(await queue.completion_history()) == 2


def test_task_from_dict_requires_id() -> None:
    with pytest.raises(ValueError):
        Task.from_dict({"type": "lint"})


def test_task_from_dict_defaults() -> None:
    task = Task.from_dict({"id": "x", "status": "bogus"})

    assert task.status == TaskStatus.PENDING
    assert task.priority == 5
    assert task.timeout == 3600
    assert task.description == ""


@pytest.mark.asyncio
async def test_evict_overflow_trims_oversized_document(queue: TaskQueue, store) -> None:
    await store.write(
        keys.QUEUE,
        {
            "completed": [Task(id=f"c{i:03d}").to_dict() for i in range(MAX_COMPLETED + 20)],
            "failed": [Task(id=f"f{i:03d}").to_dict() for i in range(MAX_FAILED + 10)],
            "pending": [Task(id="p").to_dict()],
        },
    )

    assert await queue.evict_overflow() == 30

    state = await queue.load()
    assert len(state.completed) == MAX_COMPLETED
    assert state.completed[0].id == "c020"
    assert len(state.failed) == MAX_FAILED
    assert state.failed[0].id == "f010"
    assert [t.id for t in state.pending] == ["p"]
    assert await queue.evict_overflow() == 0
