from __future__ import annotations

import hypothesis.strategies as st
from hypothesis import given
from procwarden.children import ChildSet


@given(st.lists(st.integers(min_value=1)))
def test_fork_order(pids: list[int]):
    children = ChildSet(pids)
    assert set(children) == set(pids)
    assert list(children) == list({pid: None for pid in pids})
    assert len(children) == len(set(pids))
    assert bool(children) == bool(pids)


@given(st.lists(st.integers(min_value=1)), st.lists(st.integers(min_value=1)))
def test_discard(added: list[int], removed: list[int]):
    children = ChildSet(added)
    model = {pid: None for pid in added}

    for pid in removed:
        assert children.discard(pid) == (pid in model)
        model.pop(pid, None)

    assert list(children) == list(model)


@given(st.lists(st.integers(min_value=1), min_size=1))
def test_discard_only_once(pids: list[int]):
    children = ChildSet(pids)
    for pid in pids:
        children.discard(pid)
    assert not children
    assert not any(children.discard(pid) for pid in pids)


def test_readd_keeps_position():
    children = ChildSet([3, 1, 2])
    children.add(1)
    assert list(children) == [3, 1, 2]
    children.add(4)
    assert list(children) == [3, 1, 2, 4]


def test_snapshot_is_detached():
    children = ChildSet([10, 20])
    snapshot = children.snapshot()
    children.discard(10)
    children.add(30)
    assert snapshot == (10, 20)
    assert children.snapshot() == (20, 30)


def test_eq():
    assert ChildSet([1, 2]) == ChildSet([1, 2])
    assert ChildSet([1, 2]) != ChildSet([2, 1])
    assert ChildSet([1, 2]) == {2, 1}
    assert 2 in ChildSet([1, 2])
    assert 3 not in ChildSet([1, 2])
