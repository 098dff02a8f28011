from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional

import yaml


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None else v


def _default_device_id() -> str:
    try:
        return socket.gethostname() or "unknown-device"
    except OSError:
        return "unknown-device"


@dataclass
class ProfileConfig:
    token: str = ""
    owner: str = ""
    repo: str = ""
    branch: str = "main"
    path: str = "bookmarks"

    @property
    def configured(self) -> bool:
        return bool(self.token.strip() and self.owner.strip() and self.repo.strip())

    @staticmethod
    def from_dict(data: Dict) -> "ProfileConfig":
        p = ProfileConfig()
        for k, v in (data or {}).items():
            if hasattr(p, k) and v is not None:
                setattr(p, k, str(v))
        p.path = p.path.strip("/") or "bookmarks"
        return p


@dataclass
class Settings:
    # Auto-sync triggers
    auto_sync: bool = True
    debounce_s: float = 5.0
    sync_interval_min: int = 15
    sync_on_focus: bool = False
    focus_cooldown_s: int = 60
    sync_on_startup: bool = True

    # Remote
    http_timeout_s: int = 30
    device_id: str = field(default_factory=_default_device_id)

    # Profiles
    active_profile: str = "default"
    profiles: Dict[str, ProfileConfig] = field(default_factory=dict)

    # Local state
    state_dir: str = "~/.bookhub"
    places_path: str = ""

    # Logging / UX
    log_level: str = "INFO"
    no_color: bool = False

    @property
    def state_db_path(self) -> Path:
        return Path(self.state_dir).expanduser() / "bookhub-state.sqlite"

    def profile(self, name: Optional[str] = None) -> ProfileConfig:
        key = name or self.active_profile
        if key not in self.profiles:
            self.profiles[key] = ProfileConfig()
        return self.profiles[key]

    @staticmethod
    def from_env() -> "Settings":
        s = Settings()
        s.auto_sync = _env_bool("BOOKHUB_AUTO_SYNC", s.auto_sync)
        s.debounce_s = _env_float("BOOKHUB_DEBOUNCE_S", s.debounce_s)
        s.sync_interval_min = _env_int("BOOKHUB_SYNC_INTERVAL_MIN", s.sync_interval_min)
        s.sync_on_focus = _env_bool("BOOKHUB_SYNC_ON_FOCUS", s.sync_on_focus)
        s.focus_cooldown_s = _env_int("BOOKHUB_FOCUS_COOLDOWN_S", s.focus_cooldown_s)
        s.sync_on_startup = _env_bool("BOOKHUB_SYNC_ON_STARTUP", s.sync_on_startup)

        s.http_timeout_s = _env_int("BOOKHUB_HTTP_TIMEOUT_S", s.http_timeout_s)
        s.device_id = _env_str("BOOKHUB_DEVICE_ID", s.device_id)

        s.active_profile = _env_str("BOOKHUB_PROFILE", s.active_profile) or "default"
        s.state_dir = _env_str("BOOKHUB_STATE_DIR", s.state_dir)
        s.places_path = _env_str("BOOKHUB_PLACES_PATH", s.places_path)

        s.log_level = _env_str("BOOKHUB_LOG_LEVEL", s.log_level)
        s.no_color = _env_bool("BOOKHUB_NO_COLOR", s.no_color)
        s._apply_profile_env()
        return s

    @staticmethod
    def from_file(path: Path) -> "Settings":
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"config file {path} must contain a mapping")
        s = Settings.from_env()
        known = {f.name for f in fields(Settings)}
        for k, v in data.items():
            if k == "profiles":
                for name, pdata in (v or {}).items():
                    s.profiles[str(name)] = ProfileConfig.from_dict(pdata)
            elif k in known:
                setattr(s, k, v)
        # Env vars still win for the token so it can stay out of the YAML file.
        s._apply_profile_env()
        return s

    def _apply_profile_env(self) -> None:
        names = ("TOKEN", "OWNER", "REPO", "BRANCH", "PATH")
        if not any(os.getenv(f"BOOKHUB_GITHUB_{n}") for n in names):
            return
        p = self.profile()
        p.token = _env_str("BOOKHUB_GITHUB_TOKEN", p.token)
        p.owner = _env_str("BOOKHUB_GITHUB_OWNER", p.owner)
        p.repo = _env_str("BOOKHUB_GITHUB_REPO", p.repo)
        p.branch = _env_str("BOOKHUB_GITHUB_BRANCH", p.branch) or "main"
        p.path = _env_str("BOOKHUB_GITHUB_PATH", p.path).strip("/") or "bookmarks"


def load_settings(config_path: Optional[str]) -> Settings:
    if config_path:
        return Settings.from_file(Path(config_path))
    return Settings.from_env()
