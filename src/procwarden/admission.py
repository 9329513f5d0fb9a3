from __future__ import annotations

import os

__all__ = ["AdmissionGate"]


class AdmissionGate:
    """Limits the number of concurrently running workers.

    This works like the job server of GNU make: a pipe is filled with one token per slot. Starting a
    worker reads a token, reaping it writes the token back. As reading from the pipe blocks while
    no token is available, the waiting side is woken up as soon as any other code returns a token,
    including a signal handler that interrupted the blocking read.

    Tokens beyond the capacity of the pipe are counted in memory and handed out once the pipe is
    empty. A gate with zero slots never blocks.
    """

    slots: int
    read_fd: int | None
    write_fd: int | None

    def __init__(self, slots: int):
        assert slots >= 0
        self.slots = slots
        self.read_fd = self.write_fd = None
        self._debt = 0
        self._reserve = 0
        self._open()

    def _open(self) -> None:
        self._debt = 0
        self._reserve = 0
        if self.slots == 0:
            return
        self.read_fd, self.write_fd = os.pipe()
        os.set_blocking(self.write_fd, False)
        # Tokens that do not fit into the pipe are kept in memory
        self._reserve = self.slots - self._fill(self.slots)

    def _fill(self, count: int) -> int:
        assert self.write_fd is not None
        written = 0
        while written < count:
            try:
                written += os.write(self.write_fd, b"*" * min(count - written, 4096))
            except BlockingIOError:
                break
        return written

    @property
    def bounded(self) -> bool:
        return self.slots != 0

    def acquire(self) -> None:
        """Take a slot, blocking until one is available."""
        if self.read_fd is None or self.try_acquire():
            return
        os.set_blocking(self.read_fd, True)
        token = os.read(self.read_fd, 1)
        if not token:
            raise RuntimeError("admission pipe closed")

    def try_acquire(self) -> bool:
        """Take a slot if one is available right now.

        :return: Whether a slot was taken.
        """
        if self.read_fd is None:
            return True
        os.set_blocking(self.read_fd, False)
        try:
            token = os.read(self.read_fd, 1)
        except BlockingIOError:
            if self._reserve:
                self._reserve -= 1
                return True
            return False
        finally:
            os.set_blocking(self.read_fd, True)
        if not token:
            raise RuntimeError("admission pipe closed")
        return True

    def release(self) -> None:
        """Return a previously taken slot.

        This only performs a single nonblocking write to a pipe, so it can be called from a signal
        handler.
        """
        if self.write_fd is None:
            return
        if self._debt:
            self._debt -= 1
            return
        if not self._fill(1):
            self._reserve += 1

    def charge(self, count: int) -> None:
        """Take slots for workers that were started before this gate existed.

        Slots that are not available are recorded as debt, and the corresponding number of later
        `release` calls will not return a token.
        """
        if self.read_fd is None:
            return
        for _ in range(count):
            if not self.try_acquire():
                self._debt += 1

    def reopen(self) -> None:
        """Replace the pipe with a fresh one with all slots available.

        Used by a newly forked worker, which must not share the slots of its master.
        """
        self.close()
        self._open()

    def close(self) -> None:
        if self.read_fd is not None:
            os.close(self.read_fd)
            self.read_fd = None
        if self.write_fd is not None:
            os.close(self.write_fd)
            self.write_fd = None

    def __repr__(self):  # pragma: no cover (debug only)
        return f"{type(self).__name__}(slots={self.slots})"

    def __del__(self) -> None:
        self.close()
