"""Tests for the PriorityHeap."""

from hypothesis import given
from hypothesis import strategies as st

from scheduler.heap import PriorityHeap
from scheduler.models import HeapItem


def item(uuid: str, at: int) -> HeapItem:
    return HeapItem(task_uuid=uuid, next_run_at=at, task_name=uuid)


def drain(heap: PriorityHeap) -> list[HeapItem]:
    out = []
    while heap:
        out.append(heap.extract_min())
    return out


# ── Basics ───────────────────────────────────────────────────────────────────

def test_empty_heap():
    heap = PriorityHeap()
    assert len(heap) == 0
    assert not heap
    assert heap.peek() is None
    assert heap.extract_min() is None
    assert heap.pop_due(10**12) == []


def test_extract_min_in_order():
    heap = PriorityHeap()
    for uuid, at in [("c", 300), ("a", 100), ("d", 400), ("b", 200)]:
        heap.insert(item(uuid, at))
    assert [i.task_uuid for i in drain(heap)] == ["a", "b", "c", "d"]


def test_insert_same_uuid_replaces_entry():
    heap = PriorityHeap()
    heap.insert(item("a", 100))
    heap.insert(item("b", 200))
    heap.insert(item("a", 300))
    assert len(heap) == 2
    assert heap.find("a").next_run_at == 300
    assert heap.peek().task_uuid == "b"


def test_remove_and_update_unknown_return_false():
    heap = PriorityHeap()
    heap.insert(item("a", 100))
    assert heap.remove("nope") is False
    assert heap.update("nope", 5) is False
    assert len(heap) == 1


def test_insert_then_remove_restores_state():
    heap = PriorityHeap()
    for uuid, at in [("a", 100), ("b", 200), ("c", 300)]:
        heap.insert(item(uuid, at))
    before_peek = heap.peek().task_uuid
    heap.insert(item("x", 250))
    assert heap.remove("x") is True
    assert len(heap) == 3
    assert heap.peek().task_uuid == before_peek
    assert heap.is_valid()


def test_update_below_minimum_moves_to_top():
    heap = PriorityHeap()
    for uuid, at in [("a", 100), ("b", 200), ("c", 300)]:
        heap.insert(item(uuid, at))
    assert heap.update("c", 50) is True
    assert heap.peek().task_uuid == "c"
    assert heap.is_valid()


def test_update_later_sinks():
    heap = PriorityHeap()
    for uuid, at in [("a", 100), ("b", 200), ("c", 300)]:
        heap.insert(item(uuid, at))
    heap.update("a", 1000)
    assert [i.task_uuid for i in drain(heap)] == ["b", "c", "a"]


def test_ties_follow_insertion_order():
    heap = PriorityHeap()
    for uuid in ["first", "second", "third"]:
        heap.insert(item(uuid, 100))
    assert [i.task_uuid for i in drain(heap)] == ["first", "second", "third"]


def test_pop_due_takes_only_due_items():
    heap = PriorityHeap()
    for uuid, at in [("a", 100), ("b", 200), ("c", 300)]:
        heap.insert(item(uuid, at))
    due = heap.pop_due(200)
    assert [i.task_uuid for i in due] == ["a", "b"]
    assert heap.peek().task_uuid == "c"


def test_has_and_find_copy():
    heap = PriorityHeap()
    heap.insert(item("a", 100))
    assert heap.has("a")
    found = heap.find("a")
    found.next_run_at = 999
    assert heap.peek().next_run_at == 100
    assert heap.find("missing") is None


def test_from_array_dedupes_later_wins():
    heap = PriorityHeap.from_array([item("a", 500), item("b", 200), item("a", 50), item("c", 300)])
    assert len(heap) == 3
    assert heap.is_valid()
    assert [(i.task_uuid, i.next_run_at) for i in drain(heap)] == [
        ("a", 50), ("b", 200), ("c", 300),
    ]


def test_to_array_returns_copies():
    heap = PriorityHeap()
    heap.insert(item("a", 100))
    snapshot = heap.to_array()
    snapshot[0].next_run_at = 1
    assert heap.peek().next_run_at == 100


def test_clear():
    heap = PriorityHeap()
    heap.insert(item("a", 100))
    heap.clear()
    assert len(heap) == 0


# ── Properties ───────────────────────────────────────────────────────────────

_ops = st.lists(
    st.one_of(
        st.tuples(st.just("insert"), st.integers(0, 20), st.integers(0, 1000)),
        st.tuples(st.just("extract"), st.just(0), st.just(0)),
        st.tuples(st.just("remove"), st.integers(0, 20), st.just(0)),
        st.tuples(st.just("update"), st.integers(0, 20), st.integers(0, 1000)),
    ),
    max_size=80,
)


@given(_ops)
def test_invariant_holds_after_every_operation(ops):
    heap = PriorityHeap()
    model: dict[str, int] = {}
    for op, key, at in ops:
        uuid = f"t{key}"
        if op == "insert":
            heap.insert(item(uuid, at))
            model[uuid] = at
        elif op == "extract":
            top = heap.extract_min()
            if model:
                assert top.next_run_at == min(model.values())
                del model[top.task_uuid]
            else:
                assert top is None
        elif op == "remove":
            assert heap.remove(uuid) == (uuid in model)
            model.pop(uuid, None)
        else:
            assert heap.update(uuid, at) == (uuid in model)
            if uuid in model:
                model[uuid] = at
        assert heap.is_valid()
        assert len(heap) == len(model)


@given(st.lists(st.integers(0, 10**6), max_size=60))
def test_extraction_is_non_decreasing(times):
    heap = PriorityHeap()
    for n, at in enumerate(times):
        heap.insert(item(f"t{n}", at))
    extracted = [i.next_run_at for i in drain(heap)]
    assert extracted == sorted(times)
