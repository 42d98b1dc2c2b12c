# sdkvm/core/git_ops/repository_store.py

from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Optional

from sdkvm.core.errors import RepositoryError
from sdkvm.core.events import EventBus
from sdkvm.core.locking import ExclusiveFileLock
from sdkvm.core.paths import CacheLayout

from .git_runner import GitRunner, looks_corrupted

_log = logging.getLogger("sdkvm.git")

_FETCH_STAMP = "sdkvm-fetched-at"
_FETCH_REFSPECS = ("+refs/heads/*:refs/heads/*", "+refs/tags/*:refs/tags/*")


@dataclass(frozen=True)
class Remote:
    """A git remote backing one shared mirror: the default upstream or a fork."""

    name: str
    url: str


@dataclass
class MirrorHandle:
    remote: Remote
    path: Path
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(frozen=True)
class WorktreeResult:
    path: Path
    commit: str
    action: str  # created | updated | reused


def normalize_git_url(url: str) -> str:
    # Local paths go through file:// so clone behaves the same on every platform.
    try:
        p = Path(url)
        if p.exists():
            return p.resolve().as_uri()
    except OSError:
        pass
    return url


class RepositoryStore:
    """
    One bare mirror per remote, shared by every working tree of that remote.

    Mirror mutation (clone, fetch) is serialized per remote by an in-process
    lock plus a cross-process file lock. Working-tree operations only take a
    per-target in-process lock: they read the object store but never write refs.
    """

    def __init__(
        self,
        layout: CacheLayout,
        *,
        runner: Optional[GitRunner] = None,
        events: Optional[EventBus] = None,
        git_timeout: Optional[float] = None,
        lock_timeout: float = 600.0,
        lock_stale_after: float = 3600.0,
        reference_cache: Optional[Path] = None,
    ):
        self.layout = layout
        self.runner = runner or GitRunner()
        self.events = events or EventBus()
        self.git_timeout = git_timeout
        self.lock_timeout = lock_timeout
        self.lock_stale_after = lock_stale_after
        self.reference_cache = reference_cache

        self._handles: Dict[str, MirrorHandle] = {}
        self._handles_lock = threading.Lock()
        self._tree_locks: Dict[str, threading.Lock] = {}
        self._tree_locks_lock = threading.Lock()

    # ----------------------------------------
    # Handles / locks
    # ----------------------------------------
    def handle(self, remote: Remote) -> MirrorHandle:
        with self._handles_lock:
            h = self._handles.get(remote.name)
            if h is None or h.remote.url != remote.url:
                path = self.layout.mirror_dir(remote.name)
                h = MirrorHandle(remote=remote, path=path, lock=h.lock if h else threading.Lock())
                self._handles[remote.name] = h
            return h

    def mirror_path(self, remote: Remote) -> Path:
        return self.handle(remote).path

    def _file_lock(self, remote: Remote) -> ExclusiveFileLock:
        return ExclusiveFileLock(
            self.layout.mirror_lock_file(remote.name),
            timeout=self.lock_timeout,
            stale_after=self.lock_stale_after,
            on_stale=lambda p, holder: self.events.emit(
                "LockBrokenStale", remote.name, path=str(p), holder=holder
            ),
        )

    @contextmanager
    def _exclusive(self, h: MirrorHandle) -> Iterator[None]:
        with h.lock:
            with self._file_lock(h.remote):
                yield

    @contextmanager
    def _tree_lock(self, target: Path) -> Iterator[None]:
        key = str(target.resolve())
        with self._tree_locks_lock:
            lock = self._tree_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # ----------------------------------------
    # Mirror
    # ----------------------------------------
    def is_valid_mirror(self, path: Path) -> bool:
        if not path.is_dir():
            return False
        r = self.runner.run(["rev-parse", "--is-bare-repository"], git_dir=path, timeout=self.git_timeout)
        return r.ok and r.stdout.strip() == "true"

    def has_mirror(self, remote: Remote) -> bool:
        return self.is_valid_mirror(self.mirror_path(remote))

    def ensure_mirror(self, remote: Remote, *, update: bool = False) -> Path:
        """
        Clone the bare mirror if absent. Fetch only when `update` is True.

        A caller that blocked while another fetch of the same remote finished
        skips its own fetch. A directory that exists but is not a valid bare
        repository raises RepositoryError(corrupted=True).
        """
        h = self.handle(remote)
        requested_at = time.time()

        with self._exclusive(h):
            if not h.path.exists():
                self._clone(h)
                return h.path

            if not self.is_valid_mirror(h.path):
                raise RepositoryError(
                    f"mirror for remote '{remote.name}' is corrupted; re-clone required",
                    corrupted=True,
                    details={"remote": remote.name, "path": str(h.path)},
                )

            if not update:
                return h.path

            last = self._last_fetch(h.path)
            if last is not None and last >= requested_at:
                _log.debug("fetch of %s superseded by a fetch that finished at %s", remote.name, last)
                self.events.emit("MirrorFetchSuperseded", remote.name, fetched_at=last)
                return h.path

            self._fetch(h)
        return h.path

    def reclone_mirror(self, remote: Remote) -> Path:
        """Discard a (corrupted) mirror and clone it again."""
        h = self.handle(remote)
        with self._exclusive(h):
            if h.path.exists():
                _log.warning("Removing mirror %s for re-clone", h.path)
                shutil.rmtree(h.path)
            self._clone(h)
        return h.path

    def _clone(self, h: MirrorHandle) -> None:
        url = normalize_git_url(h.remote.url)
        h.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = h.path.parent / f".{h.path.name}.clone-{uuid.uuid4().hex[:8]}"

        args = ["clone", "--bare"]
        if self.reference_cache is not None:
            args += ["--reference-if-able", str(self.reference_cache)]
        args += [url, str(tmp)]

        _log.debug("Cloning bare mirror of %s into %s", url, h.path)
        try:
            self.runner.check(args, timeout=self.git_timeout)
            self._write_fetch_stamp(tmp)
            tmp.rename(h.path)
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        self.events.emit("MirrorCloned", h.remote.name, url=h.remote.url, path=str(h.path))

    def _fetch(self, h: MirrorHandle) -> None:
        url = normalize_git_url(h.remote.url)
        r = self.runner.run(["remote", "set-url", "origin", url], git_dir=h.path, timeout=self.git_timeout)
        if not r.ok:
            self.runner.check(["remote", "add", "origin", url], git_dir=h.path, timeout=self.git_timeout)

        self.runner.check(
            ["fetch", "--prune", "--force", "--update-head-ok", "origin", *_FETCH_REFSPECS],
            git_dir=h.path,
            timeout=self.git_timeout,
        )
        self._write_fetch_stamp(h.path)
        self.events.emit("MirrorFetched", h.remote.name, url=h.remote.url)

    @staticmethod
    def _write_fetch_stamp(mirror: Path) -> None:
        (mirror / _FETCH_STAMP).write_text(repr(time.time()), encoding="utf-8")

    @staticmethod
    def _last_fetch(mirror: Path) -> Optional[float]:
        p = mirror / _FETCH_STAMP
        try:
            return float(p.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    # ----------------------------------------
    # Refs / blobs
    # ----------------------------------------
    def resolve_ref(self, remote: Remote, ref: str) -> str:
        """Resolve a tag, branch, full ref or (short) commit to a full commit id."""
        path = self.mirror_path(remote)
        if ref.startswith("refs/"):
            candidates = [ref]
        else:
            candidates = [f"refs/tags/{ref}", f"refs/heads/{ref}", ref]

        last_err = ""
        for cand in candidates:
            r = self.runner.run(
                ["rev-parse", "--verify", "--quiet", f"{cand}^{{commit}}"],
                git_dir=path,
                timeout=self.git_timeout,
            )
            if r.ok and r.stdout:
                return r.stdout.splitlines()[0].strip()
            if looks_corrupted(r.stderr):
                raise RepositoryError(
                    f"mirror for remote '{remote.name}' is corrupted; re-clone required",
                    corrupted=True,
                    details={"remote": remote.name, "ref": ref, "stderr": r.stderr},
                )
            last_err = r.stderr or last_err

        raise RepositoryError(
            f"unresolvable ref '{ref}' in remote '{remote.name}'",
            details={"remote": remote.name, "ref": ref, "stderr": last_err},
        )

    def can_resolve(self, remote: Remote, ref: str) -> bool:
        try:
            self.resolve_ref(remote, ref)
        except RepositoryError as e:
            if e.corrupted:
                raise
            return False
        return True

    def read_file(self, remote: Remote, ref: str, file_path: str) -> Optional[str]:
        """
        Return file contents at a ref straight from the mirror:
            git show <commit>:<path>

        Returns None when the mirror is absent, the ref is unknown, or the file
        does not exist at that ref.
        """
        path = self.mirror_path(remote)
        if not path.is_dir():
            return None
        try:
            commit = self.resolve_ref(remote, ref)
        except RepositoryError as e:
            if e.corrupted:
                raise
            return None
        r = self.runner.run(["show", f"{commit}:{file_path}"], git_dir=path, timeout=self.git_timeout)
        if not r.ok:
            return None
        return r.stdout

    # ----------------------------------------
    # Working trees
    # ----------------------------------------
    def head_of(self, target: Path) -> Optional[str]:
        if not (target / ".git").is_file():
            return None
        r = self.runner.run(["rev-parse", "HEAD"], cwd=target, timeout=self.git_timeout)
        if not r.ok:
            return None
        return r.stdout.strip() or None

    def ensure_working_tree(self, remote: Remote, ref: str, target: Path) -> WorktreeResult:
        """
        Make `target` a working tree of the remote's mirror, detached at `ref`.

        No-op when `target` already checks out that commit.
        """
        mirror = self.mirror_path(remote)
        with self._tree_lock(target):
            commit = self.resolve_ref(remote, ref)

            if (target / ".git").is_file():
                owner = worktree_mirror(target)
                if owner is not None and owner.resolve() != mirror.resolve():
                    raise RepositoryError(
                        f"{target} is a working tree of another mirror ({owner})",
                        details={"target": str(target), "owner": str(owner)},
                    )
                head = self.head_of(target)
                if head == commit:
                    self.events.emit("WorktreeReused", str(target), commit=commit)
                    return WorktreeResult(path=target, commit=commit, action="reused")

                self.runner.check(
                    ["checkout", "--detach", "--force", commit],
                    cwd=target,
                    timeout=self.git_timeout,
                )
                self.events.emit("WorktreeUpdated", str(target), commit=commit, previous=head)
                return WorktreeResult(path=target, commit=commit, action="updated")

            if target.exists():
                # Leftover of an interrupted add: never registered, safe to clear.
                _log.warning("Clearing incomplete working tree directory %s", target)
                shutil.rmtree(target)
            self.runner.check(["worktree", "prune"], git_dir=mirror, timeout=self.git_timeout)

            target.parent.mkdir(parents=True, exist_ok=True)
            self.runner.check(
                ["worktree", "add", "--detach", "--force", str(target), commit],
                git_dir=mirror,
                timeout=self.git_timeout,
            )
            self.events.emit("WorktreeCreated", str(target), commit=commit, remote=remote.name)
            return WorktreeResult(path=target, commit=commit, action="created")

    def remove_working_tree(self, target: Path) -> bool:
        """
        Delete a working tree directory and prune its metadata in the owning
        mirror. The object store itself is never modified.
        """
        with self._tree_lock(target):
            if not target.exists():
                return False
            mirror = worktree_mirror(target)
            shutil.rmtree(target)
            if mirror is not None and mirror.is_dir():
                r = self.runner.run(["worktree", "prune"], git_dir=mirror, timeout=self.git_timeout)
                if not r.ok:
                    _log.warning("git worktree prune failed in %s: %s", mirror, r.message)
            self.events.emit("WorktreeRemoved", str(target), mirror=str(mirror) if mirror else None)
            return True


def worktree_mirror(target: Path) -> Optional[Path]:
    """
    Owning mirror of a linked working tree, read from its `.git` file:
        gitdir: <mirror>/worktrees/<name>
    """
    dot_git = target / ".git"
    if not dot_git.is_file():
        return None
    try:
        line = dot_git.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not line.startswith("gitdir:"):
        return None
    gitdir = Path(line[len("gitdir:"):].strip())
    if not gitdir.is_absolute():
        gitdir = (target / gitdir).resolve()
    if gitdir.parent.name != "worktrees":
        return None
    return gitdir.parent.parent
