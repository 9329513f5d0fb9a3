from __future__ import annotations

import grp
import pwd
from dataclasses import dataclass

from .errors import UnknownIdentityError

__all__ = ["Identity", "resolve_user", "resolve_group"]


@dataclass(frozen=True)
class Identity:
    """A resolved user or group."""

    name: str
    id: int


def _numeric(name: str | int) -> int | None:
    if isinstance(name, int):
        return name
    if name.isdigit():
        return int(name)
    return None


def resolve_user(name: str | int) -> int:
    """Look up the uid of a user.

    Numeric ids (as `int` or as a string of digits) are returned as is.

    :raises UnknownIdentityError: if there is no such user
    """
    uid = _numeric(name)
    if uid is not None:
        return uid
    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        raise UnknownIdentityError("user", name) from None


def resolve_group(name: str | int) -> int:
    """Look up the gid of a group, see `resolve_user`."""
    gid = _numeric(name)
    if gid is not None:
        return gid
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        raise UnknownIdentityError("group", name) from None
