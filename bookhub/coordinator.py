from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Union

from .bookmarks import BookmarkEvent, LocalBookmarks
from .config import Settings
from .diff import diff
from .errors import BookHubError, MergeConflict, NotFound, RemoteConflict
from .log import get_logger
from .merge import Conflict, merge
from .migrate import migrate_legacy
from .model import Forest, count_entries
from .remote import (
    RemoteSnapshot,
    RemoteStore,
    apply_writes,
    index_change,
    index_path,
    plan_writes,
    updated_shas,
)
from .serializer import tree_to_files
from .state_sqlite import SnapshotStore, SyncState
from .triggers import Debouncer, FocusTrigger, PeriodicTimer, TimerFactory, daemon_timer

log = get_logger(__name__)


class Mode(str, Enum):
    PUSH = "push"
    PULL = "pull"
    SYNC = "sync"


class Request(str, Enum):
    SYNC = "sync"
    PUSH = "push"
    PULL = "pull"
    STATUS = "status"


@dataclass
class SyncResult:
    success: bool
    message: str
    mode: Optional[Mode] = None
    pushed: int = 0
    pulled: int = 0
    skipped: bool = False
    error: Optional[str] = None
    conflict: Optional[str] = None


@dataclass
class SyncStatus:
    profile: str
    configured: bool
    last_sync_at: Optional[str]
    conflict: bool
    conflict_detail: Optional[str]
    auto_sync: bool
    in_flight: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncCoordinator:
    """Push/pull/sync for one profile.

    At most one operation runs at a time; a call arriving while another is in
    flight returns a skipped result right away. Sync state is read once when an
    operation starts and saved once after every write for it succeeded.
    """

    def __init__(
        self,
        *,
        profile: str,
        settings: Settings,
        local: LocalBookmarks,
        remote: Optional[RemoteStore],
        snapshots: SnapshotStore,
        timer_factory: TimerFactory = daemon_timer,
    ):
        self.profile = profile
        self.settings = settings
        self.local = local
        self.remote = remote
        self.snapshots = snapshots

        self._lock = threading.Lock()
        self._suppress = 0
        self._suppress_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

        self.debouncer = Debouncer(settings.debounce_s, lambda: self.auto_sync("debounce"), timer_factory=timer_factory)
        self.periodic = PeriodicTimer(
            settings.sync_interval_min * 60, lambda: self.auto_sync("alarm"), name=f"bookhub-{profile}"
        )
        self.focus = FocusTrigger(settings.focus_cooldown_s, lambda: self.auto_sync("focus"))

    # ---- state ----

    @property
    def base_path(self) -> str:
        return self.settings.profile(self.profile).path.strip("/")

    @property
    def configured(self) -> bool:
        return self.remote is not None and self.settings.profile(self.profile).configured

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def suppressing(self) -> bool:
        return self._suppress > 0

    @contextmanager
    def suppressed(self) -> Iterator[None]:
        """Ignore local mutation events while our own changes are applied."""
        with self._suppress_lock:
            self._suppress += 1
        try:
            yield
        finally:
            with self._suppress_lock:
                self._suppress -= 1

    def get_status(self) -> SyncStatus:
        state = self.snapshots.load()
        return SyncStatus(
            profile=self.profile,
            configured=self.configured,
            last_sync_at=state.last_sync_at,
            conflict=state.conflict,
            conflict_detail=state.conflict_detail,
            auto_sync=self.settings.auto_sync,
            in_flight=self.in_flight,
        )

    # ---- entry points ----

    def handle(self, request: Request) -> Union[SyncResult, SyncStatus]:
        if request is Request.SYNC:
            return self.sync()
        if request is Request.PUSH:
            return self.push()
        if request is Request.PULL:
            return self.pull()
        if request is Request.STATUS:
            return self.get_status()
        raise ValueError(f"unknown request: {request!r}")

    def push(self, force: bool = False) -> SyncResult:
        return self._run(Mode.PUSH, lambda: self._push(force))

    def pull(self) -> SyncResult:
        return self._run(Mode.PULL, self._pull)

    def sync(self) -> SyncResult:
        return self._run(Mode.SYNC, self._sync)

    def _run(self, mode: Mode, op: Callable[[], SyncResult]) -> SyncResult:
        if not self.configured:
            return SyncResult(False, f"Profile {self.profile!r} is not configured.", mode, error="NotConfigured")
        if not self._lock.acquire(blocking=False):
            log.info("%s rejected: another operation is in progress.", mode.value)
            return SyncResult(False, "Another sync operation is in progress.", mode, skipped=True)
        try:
            return op()
        except MergeConflict as e:
            log.warning("%s", e.message)
            return SyncResult(False, e.message, mode, error="MergeConflict", conflict=e.message)
        except BookHubError as e:
            if e.retryable:
                log.warning("%s failed (will retry on the next trigger): %s", mode.value, e.message)
            else:
                log.error("%s failed: %s", mode.value, e.message)
            return SyncResult(False, e.message, mode, error=type(e).__name__)
        except Exception as e:
            log.exception("%s failed", mode.value)
            return SyncResult(False, f"{mode.value} failed: {e}", mode, error=type(e).__name__)
        finally:
            self._lock.release()

    # ---- operations (run under the single-flight lock) ----

    def _push(self, force: bool) -> SyncResult:
        assert self.remote is not None
        state = self.snapshots.load()
        local = self.local.get_tree()
        snap = self.remote.list_tree(self.base_path)
        desired = tree_to_files(local, self.base_path)

        if force:
            writes = plan_writes(desired, snap.files, self.base_path)
        else:
            previous = tree_to_files(state.base, self.base_path) if state.base is not None else {}
            try:
                writes = plan_writes(
                    desired, snap.files, self.base_path, previous=previous, known_shas=state.remote_shas
                )
            except RemoteConflict:
                log.warning("Push rejected: the remote changed since the last sync.")
                raise

        summary = diff(state.base, local).summary()
        self._commit(state, local, snap, writes, message=f"Push from {self.settings.device_id}: {summary}")
        log.info("Pushed %d file change(s)%s.", len(writes), " (forced)" if force else "")
        return SyncResult(True, f"Pushed {len(writes)} change(s).", Mode.PUSH, pushed=len(writes))

    def _pull(self) -> SyncResult:
        assert self.remote is not None
        state = self.snapshots.load()
        snap = self.remote.list_tree(self.base_path)
        tree = snap.tree(self.base_path)
        if not tree:
            raise NotFound(f"No bookmarks found under {self.base_path}/ in the repository; push first.")

        with self.suppressed():
            stats = self.local.replace_tree(tree)

        state.base = tree
        state.remote_shas = snap.shas()
        state.commit_sha = snap.commit
        state.last_sync_at = _now()
        state.clear_conflict()
        self.snapshots.save(state)
        folders, links = count_entries(tree)
        msg = f"Pulled {links} bookmark(s) in {folders} folder(s)."
        log.info(msg)
        return SyncResult(True, msg, Mode.PULL, pulled=stats.total)

    def _sync(self) -> SyncResult:
        assert self.remote is not None
        state = self.snapshots.load()
        local = self.local.get_tree()
        snap = self.remote.list_tree(self.base_path)
        remote_tree = snap.tree(self.base_path)

        result = merge(state.base, local, remote_tree)
        if isinstance(result, Conflict):
            summary = result.summary()
            state.set_conflict(summary)
            self.snapshots.save(state)
            raise MergeConflict(f"Merge conflict: {summary}", result.details)

        pulled = 0
        if result.to_local:
            with self.suppressed():
                pulled = self.local.apply_changes(result.to_local).total

        writes = []
        if result.to_remote:
            writes = plan_writes(tree_to_files(result.merged, self.base_path), snap.files, self.base_path)
        message = f"Sync from {self.settings.device_id}: {result.to_remote.summary()}"
        self._commit(state, result.merged, snap, writes, message=message)

        if not pulled and not writes:
            msg = "Already in sync."
        else:
            msg = f"Synced: {len(writes)} remote write(s), {pulled} local change(s)."
        log.info(msg)
        return SyncResult(True, msg, Mode.SYNC, pushed=len(writes), pulled=pulled)

    def _commit(self, state: SyncState, tree: Forest, snap: RemoteSnapshot, writes, *, message: str) -> None:
        """Commit entry files and the index together, then advance the base."""
        assert self.remote is not None
        extra = {}
        if writes or (tree and index_path(self.base_path) not in snap.files):
            extra = index_change(tree, self.base_path, device_id=self.settings.device_id)
        written, commit = apply_writes(self.remote, writes, message=message, parent=snap.commit, extra=extra)

        state.base = tree
        state.remote_shas = updated_shas(snap.shas(), written)
        state.commit_sha = commit or snap.commit
        state.last_sync_at = _now()
        state.clear_conflict()
        self.snapshots.save(state)

    # ---- triggers ----

    def on_local_event(self, event: BookmarkEvent) -> None:
        if self.suppressing:
            log.debug("Ignoring %s event for %s during our own apply.", event.kind.value, event.id or "?")
            return
        if not self.settings.auto_sync or not self.configured:
            return
        self.debouncer.trigger()

    def on_focus(self) -> bool:
        if not self.settings.sync_on_focus:
            return False
        return self.focus.fire()

    def auto_sync(self, reason: str) -> Optional[SyncResult]:
        if not self.settings.auto_sync or not self.configured:
            return None
        if self.snapshots.load().conflict:
            log.info("Auto-sync (%s) paused: unresolved conflict. Run sync, push --force or pull.", reason)
            return None
        log.debug("Auto-sync triggered by %s.", reason)
        return self.sync()

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.local.subscribe(self.on_local_event)
        if self.settings.auto_sync and self.configured:
            self.periodic.start()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.periodic.stop()
        self.debouncer.cancel()

    def startup(self) -> None:
        """Migrate a legacy export if needed, start the triggers and run the startup sync."""
        if not self.configured:
            log.info("Profile %s is not configured; auto-sync stays off.", self.profile)
            return
        if self._lock.acquire(blocking=False):
            try:
                migrate_legacy(
                    self.snapshots, self.remote, base_path=self.base_path, device_id=self.settings.device_id
                )
            except Exception as e:
                log.warning("Legacy migration failed (will retry on next start): %s", e)
            finally:
                self._lock.release()
        self.start()
        if self.settings.sync_on_startup:
            self.auto_sync("startup")
