# sdkvm/core/install/orchestrator.py

from __future__ import annotations

import logging
import shutil
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Executor, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from sdkvm.core.config.config_store import ConfigStore, ProjectConfig
from sdkvm.core.engine.cache import Engine, EngineCache, EngineCleanupResult
from sdkvm.core.engine.manifest import read_tree_manifest
from sdkvm.core.errors import (
    ConfigError,
    InstallTimeoutError,
    LinkError,
    ManifestUnavailableError,
    NotInstalledError,
    SdkError,
    UnknownForkError,
)
from sdkvm.core.events import EventBus
from sdkvm.core.git_ops.repository_store import Remote, RepositoryStore, WorktreeResult
from sdkvm.core.observability.metrics import record_install
from sdkvm.core.paths import CacheLayout
from sdkvm.core.versions.models import Version, VersionKind
from sdkvm.core.versions.resolver import VersionResolver

from .models import InstallOptions, Installation, InstallState, RemovalResult
from .registry import InstallationRegistry, InstallRecord
from .state_machine import is_settled

_log = logging.getLogger("sdkvm.install")


class InstallationOrchestrator:
    """
    Installs versions by preparing the working tree and the engine payload
    concurrently, then linking the engine into the tree.

    Nothing here is global: the shared mirrors live in the RepositoryStore and
    the shared engines in the EngineCache handed in by the caller.
    """

    def __init__(
        self,
        *,
        layout: CacheLayout,
        store: RepositoryStore,
        cache: EngineCache,
        resolver: VersionResolver,
        config_store: ConfigStore,
        registry: InstallationRegistry,
        default_remote: Remote,
        events: Optional[EventBus] = None,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
    ):
        self.layout = layout
        self.store = store
        self.cache = cache
        self.resolver = resolver
        self.config_store = config_store
        self.registry = registry
        self.default_remote = default_remote
        self.events = events or EventBus()

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sdkvm-install")
        # classification only: never consults the release catalog
        self._offline = VersionResolver(None)

        self._path_locks: Dict[str, threading.Lock] = {}
        self._path_locks_lock = threading.Lock()

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    # ----------------------------------------
    # Resolution
    # ----------------------------------------
    def resolve(self, spec: str) -> Version:
        return self.resolver.resolve(spec, self.config_store.fork_table())

    def remote_for(self, version: Version) -> Remote:
        if not version.fork:
            return self.default_remote
        return self.remote_named(version.fork)

    def remote_named(self, name: str) -> Remote:
        if name == self.default_remote.name:
            return self.default_remote
        fork = self.config_store.get_fork(name)
        if fork is None:
            raise UnknownForkError(f"fork '{name}' is not registered", details={"alias": name})
        return Remote(name=fork.alias, url=fork.url)

    def path_for(self, version: Version) -> Path:
        return self.layout.version_dir(version.raw, fork=version.fork)

    @contextmanager
    def _path_lock(self, path: Path) -> Iterator[None]:
        with self._path_locks_lock:
            lock = self._path_locks.setdefault(str(path), threading.Lock())
        with lock:
            yield

    # ----------------------------------------
    # Install
    # ----------------------------------------
    def install(
        self,
        spec: str,
        options: Optional[InstallOptions] = None,
        **kwargs,
    ) -> Installation:
        """
        Resolve `spec` and make its installation ready.

        Keyword arguments are a shorthand for InstallOptions fields. A ready
        installation at the right commit returns immediately without touching
        the network. On failure the completed half (tree or engine) stays on
        disk and a retry finishes only the missing half.
        """
        opts = options or InstallOptions(**kwargs)
        started = time.monotonic()

        version = self.resolve(spec)
        remote = self.remote_for(version)
        path = self.path_for(version)
        self.events.emit("VersionResolved", version.name, **version.to_dict())

        with self._path_lock(path):
            if not opts.update:
                ready = self._ready_installation(version, remote, path, opts.flavor)
                if ready is not None:
                    self._mark_ready(ready, commit=self.store.head_of(path))
                    record_install("noop", time.monotonic() - started)
                    _log.debug("%s already installed at %s", version.name, path)
                    return ready

            self._begin(version, path, opts.flavor)
            try:
                inst = self._install(version, remote, path, opts)
            except Exception as e:
                self._fail(version, path, opts.flavor, e)
                record_install("error", time.monotonic() - started)
                raise

        record_install("ok", time.monotonic() - started)
        self.events.emit(
            "InstallCompleted",
            version.name,
            path=str(path),
            engine_hash=inst.engine_hash,
            flavor=opts.flavor,
            seconds=round(time.monotonic() - started, 3),
        )
        return inst

    def ensure_installed(self, spec: str, flavor: Optional[str] = None) -> Installation:
        """Install `spec` unless it is already ready; never fetches a ready version."""
        return self.install(spec, InstallOptions(flavor=flavor, update=False))

    # ----------------------------------------
    # Projects
    # ----------------------------------------
    def ensure_project(self, project_dir: Optional[Path] = None, flavor: Optional[str] = None) -> Installation:
        """
        Make the version a project is configured for ready.

        The project root is the nearest directory at or above `project_dir`
        holding a project config; `flavor` picks the flavor's version instead
        of the default one.
        """
        root = self.config_store.find_project_root(project_dir)
        if root is None:
            raise ConfigError(
                "no project config found; use a version in this project first",
                details={"start": str(project_dir or Path.cwd())},
            )
        cfg = self.config_store.read_project_config(root)
        spec = cfg.version_for(flavor)
        _log.info("Project %s uses %s%s", root, spec, f" for flavor {flavor}" if flavor else "")
        return self.ensure_installed(spec, flavor=flavor)

    def use_version(self, spec: str, project_dir: Path, flavor: Optional[str] = None) -> Installation:
        """
        Install `spec` and pin it in the project config at `project_dir`.

        With a flavor only that flavor's entry changes; a project without a
        config also gets `spec` as its default version.
        """
        inst = self.ensure_installed(spec, flavor=flavor)
        cfg = self.config_store.read_project_config(project_dir)
        name = inst.version.name
        if cfg is None:
            cfg = ProjectConfig(flutter=name)
        if flavor:
            cfg.flavors = {**(cfg.flavors or {}), flavor: name}
        else:
            cfg.flutter = name
        self.config_store.write_project_config(project_dir, cfg)
        self.events.emit("ProjectVersionSet", name, project=str(project_dir), flavor=flavor)
        return inst

    # ----------------------------------------
    # Mirrors / cache root
    # ----------------------------------------
    def reclone_mirror(self, remote_name: str) -> Path:
        """Replace a remote's mirror with a fresh clone (recovery from a corrupted mirror)."""
        remote = self.remote_named(remote_name)
        path = self.store.reclone_mirror(remote)
        _log.info("Re-cloned mirror of %s at %s", remote.name, path)
        return path

    def destroy(self) -> bool:
        """Delete the whole cache root: mirrors, engines, working trees and config."""
        root = self.layout.root
        if not root.exists():
            return False
        _log.warning("Removing cache root %s", root)
        shutil.rmtree(root)
        self.events.emit("CacheDestroyed", str(root))
        return True

    def _install(self, version: Version, remote: Remote, path: Path, opts: InstallOptions) -> Installation:
        deadline = None if opts.timeout is None else time.monotonic() + opts.timeout

        wt_future: Future = self.executor.submit(self._prepare_worktree, version, remote, path, opts.update)
        en_future: Future = self.executor.submit(self._prepare_engine, version)
        futures = {wt_future: "worktree", en_future: "engine"}

        tree, engine, first_error = self._collect(futures, version, path, opts.flavor, deadline)

        if first_error is not None:
            raise first_error

        # The checked-out manifest decides. The engine branch may have read it
        # before a concurrent fetch moved the ref, or not at all (no raw endpoint).
        tree_hash = self.cache.parse_manifest(read_tree_manifest(path), version=version.name)
        if engine is None:
            engine = self._within(deadline, version, self.executor.submit(self.cache.ensure_engine, tree_hash))
            self._transition(version, path, opts.flavor, InstallState.ENGINE_READY, engine_hash=engine.hash)
        elif engine.hash != tree_hash:
            _log.debug("engine of %s moved from %s to %s with the fetch", version.name, engine.hash, tree_hash)
            engine = self._within(deadline, version, self.executor.submit(self.cache.ensure_engine, tree_hash))

        self._link(path, engine)
        self._transition(version, path, opts.flavor, InstallState.LINKED, engine_hash=engine.hash)
        self._transition(
            version,
            path,
            opts.flavor,
            InstallState.READY,
            engine_hash=engine.hash,
            commit=tree.commit,
        )
        return Installation(path=path, version=version, engine_hash=engine.hash, flavor=opts.flavor)

    def _collect(
        self,
        futures: Dict[Future, str],
        version: Version,
        path: Path,
        flavor: Optional[str],
        deadline: Optional[float],
    ) -> Tuple[Optional[WorktreeResult], Optional[Engine], Optional[SdkError]]:
        """
        Wait for both branches. A failing branch never cancels the other; the
        error of the branch that failed first is returned.
        """
        tree: Optional[WorktreeResult] = None
        engine: Optional[Engine] = None
        first_error: Optional[SdkError] = None
        pending = set(futures)

        while pending:
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            done, pending = wait(pending, timeout=timeout, return_when=FIRST_EXCEPTION)
            if not done:
                raise InstallTimeoutError(
                    f"install of {version.name} did not finish in time",
                    details={"version": version.name, "pending": sorted(futures[f] for f in pending)},
                )
            for f in done:
                branch = futures[f]
                exc = f.exception()
                if exc is None:
                    if branch == "worktree":
                        tree = f.result()
                        self._transition(version, path, flavor, InstallState.WORKTREE_READY, commit=tree.commit)
                    else:
                        engine = f.result()
                        self._transition(version, path, flavor, InstallState.ENGINE_READY, engine_hash=engine.hash)
                    continue
                if branch == "engine" and isinstance(exc, ManifestUnavailableError):
                    _log.debug("engine manifest for %s deferred to the working tree", version.name)
                    continue
                if not isinstance(exc, SdkError):
                    raise exc
                _log.debug("%s branch of %s failed: %s", branch, version.name, exc)
                if first_error is None:
                    first_error = exc
        return tree, engine, first_error

    def _within(self, deadline: Optional[float], version: Version, future: Future) -> Engine:
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            raise InstallTimeoutError(
                f"install of {version.name} did not finish in time",
                details={"version": version.name, "pending": ["engine"]},
            ) from None

    def _prepare_worktree(self, version: Version, remote: Remote, path: Path, update: bool) -> WorktreeResult:
        self.store.ensure_mirror(remote, update=update)
        ref = version.git_ref
        if not update and not self.store.can_resolve(remote, ref):
            # New tag or branch since the mirror was cloned.
            _log.debug("%s not in mirror %s; fetching", ref, remote.name)
            self.store.ensure_mirror(remote, update=True)

        commit = self.store.resolve_ref(remote, ref)
        head = self.store.head_of(path)
        if head is not None and head != commit:
            # Markers go before the tree moves; linking writes them again.
            self.cache.invalidate_markers(path)
        return self.store.ensure_working_tree(remote, ref, path)

    def _prepare_engine(self, version: Version) -> Engine:
        engine_hash = self.cache.compute_hash(version)
        return self.cache.ensure_engine(engine_hash)

    def _link(self, path: Path, engine: Engine) -> None:
        try:
            self.cache.publish_link(path, engine.path)
        except LinkError as e:
            if e.details.get("reason") != "engine_missing":
                raise
            # Removed by a concurrent cleanup between ensure and link.
            _log.warning("engine %s vanished before linking; fetching it again", engine.hash)
            engine = self.cache.ensure_engine(engine.hash)
            self.cache.publish_link(path, engine.path)

    def _ready_installation(
        self,
        version: Version,
        remote: Remote,
        path: Path,
        flavor: Optional[str],
    ) -> Optional[Installation]:
        if not self.cache.is_ready(path):
            return None
        head = self.store.head_of(path)
        if head is None:
            return None
        # Local rev-parse only: a ready tree is judged against the mirror as it is.
        if not self.store.has_mirror(remote) or not self.store.can_resolve(remote, version.git_ref):
            return None
        if head != self.store.resolve_ref(remote, version.git_ref):
            return None

        linked = self.cache.linked_hash(path)
        text = read_tree_manifest(path)
        if text is None or text.strip().lower() != linked:
            return None
        return Installation(path=path, version=version, engine_hash=linked, flavor=flavor)

    # ----------------------------------------
    # Registry state
    # ----------------------------------------
    def _transition(self, version: Version, path: Path, flavor: Optional[str], dst: InstallState, **fields) -> InstallRecord:
        rec = self.registry.transition(version.name, flavor, dst, path=path, **fields)
        self.events.emit("InstallStateChanged", version.name, state=dst.value, flavor=flavor)
        return rec

    def _begin(self, version: Version, path: Path, flavor: Optional[str]) -> None:
        rec = self.registry.get(version.name, flavor)
        if rec is not None and not is_settled(rec.state):
            # Left mid-flight by an interrupted process.
            self._transition(version, path, flavor, InstallState.ERROR, last_error="interrupted")
        self._transition(version, path, flavor, InstallState.RESOLVING)

    def _fail(self, version: Version, path: Path, flavor: Optional[str], err: Exception) -> None:
        if isinstance(err, SdkError):
            info = err.to_dict()
        else:
            _log.error("install of %s failed unexpectedly", version.name, exc_info=err)
            info = {"code": "internal_error", "message": f"{type(err).__name__}: {err}", "details": {}}
        self._transition(version, path, flavor, InstallState.ERROR, last_error=f"{info['code']}: {info['message']}")
        self.events.emit("InstallFailed", version.name, flavor=flavor, **info)

    def _mark_ready(self, inst: Installation, *, commit: Optional[str]) -> None:
        rec = self.registry.get(inst.version.name, inst.flavor)
        if rec is not None and not is_settled(rec.state):
            self._transition(inst.version, inst.path, inst.flavor, InstallState.ERROR, last_error="interrupted")
        self._transition(
            inst.version,
            inst.path,
            inst.flavor,
            InstallState.READY,
            engine_hash=inst.engine_hash,
            commit=commit,
        )

    # ----------------------------------------
    # Queries
    # ----------------------------------------
    def list_installed(self) -> List[Installation]:
        """
        Working trees on disk: versions/<version>, and versions/<alias>/<version>
        for fork-qualified versions.
        """
        root = self.layout.versions_dir
        if not root.is_dir():
            return []

        found: List[Tuple[str, Path]] = []
        for entry in sorted(root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            if (entry / ".git").exists():
                found.append((entry.name, entry))
                continue
            for sub in sorted(entry.iterdir()):
                if sub.is_dir() and (sub / ".git").exists():
                    found.append((f"{entry.name}/{sub.name}", sub))

        aliases = {name.split("/", 1)[0]: "" for name, _ in found if "/" in name}
        out: List[Installation] = []
        for name, path in found:
            try:
                version = self._offline.resolve(name, aliases)
            except SdkError as e:
                _log.warning("Skipping unrecognized installation %s: %s", path, e)
                continue
            engine_hash = self.cache.linked_hash(path) or self.cache.stamped_hash(path)
            out.append(Installation(path=path, version=version, engine_hash=engine_hash))
        return out

    def _locate(self, spec: str) -> Version:
        forks = self.config_store.fork_table()
        s = (spec or "").strip()
        if "/" in s:
            # keep removed forks' trees addressable
            alias = s.split("/", 1)[0]
            forks = {**forks, alias: forks.get(alias, "")}
        version = self._offline.resolve(s, forks)
        if version.kind != VersionKind.RELEASE_TAG or self._is_known(version):
            return version
        # installs are stored under the catalog's tag name; "v3.24.0" and "3.24.0" name the same release
        alt = version.raw[1:] if version.raw.startswith("v") else f"v{version.raw}"
        other = replace(version, raw=alt)
        return other if self._is_known(other) else version

    def _is_known(self, version: Version) -> bool:
        return self.path_for(version).exists() or bool(self.registry.for_version(version.name))

    def state_of(self, spec: str, flavor: Optional[str] = None) -> InstallState:
        version = self._locate(spec)
        rec = self.registry.get(version.name, flavor)
        path = self.path_for(version)
        if rec is not None:
            if rec.state == InstallState.READY and not self.cache.is_ready(path):
                return InstallState.ERROR
            return rec.state
        return InstallState.READY if self.cache.is_ready(path) else InstallState.ABSENT

    def installation_for(self, spec: str, flavor: Optional[str] = None) -> Optional[Installation]:
        version = self._locate(spec)
        path = self.path_for(version)
        if not self.cache.is_ready(path):
            return None
        rec = self.registry.get(version.name, flavor)
        if flavor is not None and rec is None:
            return None
        return Installation(path=path, version=version, engine_hash=self.cache.linked_hash(path), flavor=flavor)

    # ----------------------------------------
    # Remove / cleanup
    # ----------------------------------------
    def remove(self, spec: str, *, cleanup: bool = False) -> RemovalResult:
        """
        Delete a version's working tree and every registry record of it.

        The engine it used stays cached; its hash is returned so the caller can
        decide on cleanup (or pass `cleanup=True`).
        """
        version = self._locate(spec)
        path = self.path_for(version)

        with self._path_lock(path):
            engine_hash = self.cache.linked_hash(path) or self.cache.stamped_hash(path)
            existed = path.exists()
            if existed:
                self.cache.unlink(path)
                self.store.remove_working_tree(path)
            dropped = self.registry.remove_version(version.name)

        if not existed and not dropped:
            raise NotInstalledError(f"{version.name} is not installed", details={"version": version.name})

        _log.info("Removed %s (engine %s)", version.name, engine_hash)
        result = RemovalResult(
            version=version.name,
            path=path,
            removed=existed,
            engine_hash=engine_hash,
            records_removed=[r.flavor for r in dropped],
        )
        if cleanup:
            result.cleanup = self.cleanup_unused()
        return result

    def cleanup_unused(self) -> EngineCleanupResult:
        live = [i.path for i in self.list_installed()]
        return self.cache.cleanup_unused(live)

    # ----------------------------------------
    # Global version
    # ----------------------------------------
    def get_global_version(self) -> Optional[str]:
        return self.config_store.get_global_version()

    def set_global_version(self, spec: str) -> Installation:
        inst = self.installation_for(spec)
        if inst is None:
            raise NotInstalledError(f"{spec} is not installed", details={"version": spec})
        self.config_store.set_global_version(inst.version.name)
        return inst

    def unset_global_version(self) -> bool:
        return self.config_store.unset_global_version()
