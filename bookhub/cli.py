from __future__ import annotations

import argparse
import json
import time
from typing import List

from . import __version__
from .config import ProfileConfig, Settings, load_settings
from .coordinator import SyncResult
from .firefox_store import FirefoxBookmarks, resolve_places_path
from .github_api import GitHubAPI
from .log import LogConfig, get_logger, setup_logging
from .profiles import ProfileRegistry
from .watch import PlacesWatcher

log = get_logger(__name__)


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(
        prog="bookhub",
        description="Sync Firefox bookmarks with a GitHub repository (three-way merge).",
    )
    p.add_argument("-V", "--version", action="version", version=f"bookhub {__version__}")
    p.add_argument("--config", default=None, help="YAML config file (optional). Env vars override defaults.")
    p.add_argument("--profile", default=None, help="Profile to operate on (default: active profile).")
    p.add_argument("--log-level", default=None, help="DEBUG/INFO/WARN/ERROR (overrides env/config).")
    p.add_argument("--no-color", action="store_true", help="Disable colored logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("sync", help="Three-way merge local bookmarks with the repository.")
    push = sub.add_parser("push", help="Write local changes to the repository.")
    push.add_argument("--force", action="store_true", help="Overwrite the repository with the local tree.")
    sub.add_parser("pull", help="Replace local bookmarks with the repository tree.")
    sub.add_parser("status", help="Print sync status as JSON.")
    sub.add_parser("watch", help="Auto-sync on local edits and on a timer until interrupted.")
    sub.add_parser("profiles", help="List configured profiles.")
    sub.add_parser("check", help="Validate the GitHub token and repository access.")

    args = p.parse_args(argv)
    try:
        cfg = load_settings(args.config)
    except (OSError, ValueError) as e:
        print(f"Failed to load config: {e}")
        return 2
    if args.profile:
        cfg.active_profile = args.profile
    if args.log_level:
        cfg.log_level = args.log_level
    if args.no_color:
        cfg.no_color = True
    setup_logging(LogConfig(level=cfg.log_level, no_color=cfg.no_color))

    if args.cmd == "profiles":
        return _cmd_profiles(cfg)
    if args.cmd == "check":
        return _cmd_check(cfg)
    if args.cmd == "status":
        registry = _registry(cfg, FirefoxBookmarks(cfg.places_path or "places.sqlite"))
        print(json.dumps(registry.active.get_status().to_dict(), indent=2))
        return 0

    if not cfg.profile().configured:
        log.error(
            "Profile %s is not configured. Set BOOKHUB_GITHUB_TOKEN/OWNER/REPO or add it to the config file.",
            cfg.active_profile,
        )
        return 2
    if not cfg.places_path:
        log.error("No Firefox profile given. Set BOOKHUB_PLACES_PATH or places_path in the config file.")
        return 2
    try:
        local = FirefoxBookmarks(resolve_places_path(cfg.places_path))
    except FileNotFoundError as e:
        log.error("%s", e)
        return 2

    registry = _registry(cfg, local)
    coord = registry.active
    if args.cmd == "sync":
        return _report(coord.sync())
    if args.cmd == "push":
        return _report(coord.push(force=args.force))
    if args.cmd == "pull":
        return _report(coord.pull())
    if args.cmd == "watch":
        return _cmd_watch(registry, local)
    return 2


def _registry(cfg: Settings, local: FirefoxBookmarks) -> ProfileRegistry:
    def _remote(p: ProfileConfig) -> GitHubAPI:
        return GitHubAPI(p.token, p.owner, p.repo, p.branch, timeout_s=cfg.http_timeout_s)

    return ProfileRegistry(cfg, local, _remote)


def _report(result: SyncResult) -> int:
    if result.success:
        log.info("%s", result.message)
        return 0
    if result.conflict:
        log.error("%s", result.conflict)
        log.error("Resolve it by running `bookhub push --force` (keep local) or `bookhub pull` (keep remote).")
    elif not result.skipped:
        log.error("%s", result.message)
    else:
        log.warning("%s", result.message)
    return 1


def _cmd_profiles(cfg: Settings) -> int:
    names = sorted(set(cfg.profiles) | {cfg.active_profile})
    for name in names:
        p = cfg.profile(name)
        mark = "*" if name == cfg.active_profile else " "
        target = f"{p.owner}/{p.repo}@{p.branch}:{p.path}" if p.configured else "(not configured)"
        print(f"{mark} {name:<16} {target}")
    return 0


def _cmd_check(cfg: Settings) -> int:
    p = cfg.profile()
    if not p.configured:
        log.error("Profile %s is not configured.", cfg.active_profile)
        return 2
    with GitHubAPI(p.token, p.owner, p.repo, p.branch, timeout_s=cfg.http_timeout_s) as api:
        info = api.validate_token()
        if not info.valid:
            log.error("GitHub token is invalid or expired.")
            return 1
        log.info("Token OK for %s (scopes: %s).", info.username or "?", ", ".join(info.scopes) or "n/a")
        if not api.check_repo():
            log.error("Repository %s/%s is missing or not accessible with this token.", p.owner, p.repo)
            return 1
    log.info("Repository %s/%s is accessible.", p.owner, p.repo)
    return 0


def _cmd_watch(registry: ProfileRegistry, local: FirefoxBookmarks) -> int:
    coord = registry.active
    watcher = PlacesWatcher(local)
    coord.startup()
    watcher.start()
    log.info("Watching %s (profile %s). Press Ctrl+C to stop.", local.places_path, coord.profile)
    try:
        while watcher.running:
            time.sleep(1)
        log.error("File watcher stopped unexpectedly.")
        return 1
    except KeyboardInterrupt:
        log.info("Stopping.")
    finally:
        watcher.stop()
        registry.stop_all()
    return 0
