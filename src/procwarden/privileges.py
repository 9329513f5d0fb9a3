from __future__ import annotations

import os

from .errors import PrivilegeError
from .logging import log_debug


def drop_privileges(uid: int | None = None, gid: int | None = None) -> None:
    """Switch the current process to the given user and group ids.

    The group is always changed first, as changing the user usually removes the permission required
    to change the group. If changing the group fails, the user is left unchanged.

    :raises PrivilegeError: if the operating system rejects either change
    """
    if gid is not None:
        if os.geteuid() == 0:
            # Otherwise the supplementary groups of the original (root) user stay in effect
            try:
                os.setgroups([gid])
            except OSError as exc:
                raise PrivilegeError(f"could not set supplementary groups to {gid}: {exc}") from exc
        try:
            os.setgid(gid)
        except OSError as exc:
            raise PrivilegeError(f"could not set GID to {gid}: {exc}") from exc
        log_debug(f"changed GID to {gid}")

    if uid is not None:
        try:
            os.setuid(uid)
        except OSError as exc:
            raise PrivilegeError(f"could not set UID to {uid}: {exc}") from exc
        log_debug(f"changed UID to {uid}")
