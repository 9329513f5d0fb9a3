from __future__ import annotations

from typing import Collection, Iterable, Iterator

__all__ = ["ChildSet"]


class ChildSet(Collection[int]):
    """The pids of the live workers of a supervisor, in the order they were forked.

    This does not guard against concurrent modification by itself, the owning `Supervisor` only
    mutates it from within its critical section.
    """

    __slots__ = ("_inner",)

    _inner: dict[int, None]

    def __init__(self, pids: Iterable[int] = ()) -> None:
        self._inner = {pid: None for pid in pids}

    def __iter__(self) -> Iterator[int]:
        return iter(self._inner)

    def __bool__(self) -> bool:
        return bool(self._inner)

    def __len__(self) -> int:
        return len(self._inner)

    def __contains__(self, pid: object) -> bool:
        return pid in self._inner

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self)!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, (set, frozenset)):
            return set(self) == other
        if not isinstance(other, ChildSet):
            return NotImplemented  # pragma: no cover
        return list(self._inner) == list(other._inner)

    def add(self, pid: int) -> None:
        """Start tracking a worker.

        Adding a pid that is already tracked keeps its original position.
        """
        self._inner[pid] = None

    def discard(self, pid: int) -> bool:
        """Stop tracking a worker.

        :return: Whether the pid was tracked before.
        """
        try:
            del self._inner[pid]
        except KeyError:
            return False
        return True

    def clear(self) -> None:
        self._inner.clear()

    def snapshot(self) -> tuple[int, ...]:
        """Return the tracked pids as a tuple, unaffected by later changes."""
        return tuple(self._inner)
