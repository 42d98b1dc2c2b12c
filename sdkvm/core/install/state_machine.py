# sdkvm/core/install/state_machine.py
from __future__ import annotations

from typing import Dict, Set, Tuple

from .models import InstallState


_ALLOWED: Set[Tuple[InstallState, InstallState]] = {
    (InstallState.ABSENT, InstallState.RESOLVING),

    # the two preparation branches finish in either order
    (InstallState.RESOLVING, InstallState.WORKTREE_READY),
    (InstallState.RESOLVING, InstallState.ENGINE_READY),
    (InstallState.WORKTREE_READY, InstallState.ENGINE_READY),
    (InstallState.ENGINE_READY, InstallState.WORKTREE_READY),

    (InstallState.WORKTREE_READY, InstallState.LINKED),
    (InstallState.ENGINE_READY, InstallState.LINKED),
    (InstallState.LINKED, InstallState.READY),

    # another record (flavor) of the same working tree already made it ready
    (InstallState.ABSENT, InstallState.READY),
    (InstallState.ERROR, InstallState.READY),

    # re-install / update of a ready installation
    (InstallState.READY, InstallState.RESOLVING),
    # retry after failure
    (InstallState.ERROR, InstallState.RESOLVING),
    # removal
    (InstallState.READY, InstallState.ABSENT),
    (InstallState.ERROR, InstallState.ABSENT),
}

_ERROR_SOURCES: Set[InstallState] = {
    InstallState.RESOLVING,
    InstallState.WORKTREE_READY,
    InstallState.ENGINE_READY,
    InstallState.LINKED,
}


def is_settled(state: InstallState) -> bool:
    return state in (InstallState.ABSENT, InstallState.READY, InstallState.ERROR)


def can_transition(src: InstallState, dst: InstallState) -> bool:
    if src == dst:
        return True
    if dst == InstallState.ERROR:
        return src in _ERROR_SOURCES
    return (src, dst) in _ALLOWED


def ensure_transition(src: InstallState, dst: InstallState) -> None:
    if not can_transition(src, dst):
        raise ValueError(f"Illegal transition: {src.value} -> {dst.value}")


def allowed_next(src: InstallState) -> Dict[str, bool]:
    out: Dict[str, bool] = {}
    for a, b in _ALLOWED:
        if a == src:
            out[b.value] = True
    if src in _ERROR_SOURCES:
        out[InstallState.ERROR.value] = True
    return out
