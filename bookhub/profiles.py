from __future__ import annotations

from typing import Callable, Dict, List, Optional

from .bookmarks import LocalBookmarks
from .config import ProfileConfig, Settings
from .coordinator import SyncCoordinator
from .log import get_logger
from .remote import RemoteStore
from .state_sqlite import SnapshotStore
from .triggers import TimerFactory, daemon_timer

log = get_logger(__name__)

RemoteFactory = Callable[[ProfileConfig], RemoteStore]


class ProfileRegistry:
    """One coordinator per profile, each with its own sync state and single-flight guard.

    Only the active profile has its triggers running.
    """

    def __init__(
        self,
        settings: Settings,
        local: LocalBookmarks,
        remote_factory: RemoteFactory,
        *,
        timer_factory: TimerFactory = daemon_timer,
    ):
        self.settings = settings
        self.local = local
        self.remote_factory = remote_factory
        self.timer_factory = timer_factory
        self._coordinators: Dict[str, SyncCoordinator] = {}

    @property
    def active_name(self) -> str:
        return self.settings.active_profile

    def names(self) -> List[str]:
        return sorted(set(self.settings.profiles) | {self.active_name})

    def get(self, name: Optional[str] = None) -> SyncCoordinator:
        key = name or self.active_name
        coord = self._coordinators.get(key)
        if coord is None:
            cfg = self.settings.profile(key)
            remote = self.remote_factory(cfg) if cfg.configured else None
            coord = SyncCoordinator(
                profile=key,
                settings=self.settings,
                local=self.local,
                remote=remote,
                snapshots=SnapshotStore(self.settings.state_db_path, key),
                timer_factory=self.timer_factory,
            )
            self._coordinators[key] = coord
        return coord

    @property
    def active(self) -> SyncCoordinator:
        return self.get(self.active_name)

    def switch(self, name: str) -> SyncCoordinator:
        """Stop the active profile's triggers and start the ones of ``name``. No state is touched."""
        if name == self.active_name and name in self._coordinators:
            return self._coordinators[name]
        current = self._coordinators.get(self.active_name)
        if current is not None:
            current.stop()
        self.settings.active_profile = name
        coord = self.get(name)
        coord.start()
        log.info("Switched to profile %s.", name)
        return coord

    def remove(self, name: str) -> None:
        if name == self.active_name:
            raise ValueError(f"cannot remove the active profile {name!r}; switch to another one first")
        coord = self._coordinators.pop(name, None)
        if coord is not None:
            coord.stop()
        SnapshotStore(self.settings.state_db_path, name).delete()
        self.settings.profiles.pop(name, None)
        log.info("Removed profile %s and its sync state.", name)

    def stop_all(self) -> None:
        for coord in self._coordinators.values():
            coord.stop()
