from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .log import get_logger
from .remote import RemoteStore, apply_writes, index_change, plan_writes, updated_shas
from .serializer import LEGACY_JSON, LEGACY_MARKDOWN, parse_legacy_json, tree_to_files
from .state_sqlite import SnapshotStore, SyncState

log = get_logger(__name__)


def migrate_legacy(
    snapshots: SnapshotStore,
    remote: RemoteStore,
    *,
    base_path: str,
    device_id: str,
) -> Optional[SyncState]:
    """Convert a single-file ``bookmarks.json`` export into the per-file layout.

    Runs only for profiles that have no sync state yet; returns None when it
    skipped. A state is always saved on success, so later startups skip it.
    Errors propagate and leave nothing saved, so the next startup retries.
    """
    if snapshots.exists():
        return None

    base_path = base_path.strip("/")
    snap = remote.list_tree(base_path)
    state = SyncState(profile=snapshots.profile, remote_shas=snap.shas(), commit_sha=snap.commit)
    legacy = snap.files.get(f"{base_path}/{LEGACY_JSON}")

    if legacy is None:
        log.info("No legacy export found under %s/; nothing to migrate.", base_path)
        snapshots.save(state)
        return state
    if snap.entry_files(base_path):
        log.info("Per-file layout already present under %s/; leaving %s in place.", base_path, LEGACY_JSON)
        snapshots.save(state)
        return state

    forest = parse_legacy_json(legacy.content)
    message = f"Migrate bookmarks to per-file layout ({device_id})"
    writes = plan_writes(tree_to_files(forest, base_path), snap.files, base_path)
    extra = index_change(forest, base_path, device_id=device_id)
    for name in (LEGACY_JSON, LEGACY_MARKDOWN):
        path = f"{base_path}/{name}"
        if path in snap.files:
            extra[path] = None
    written, commit = apply_writes(remote, writes, message=message, parent=snap.commit, extra=extra)

    state.base = forest
    state.remote_shas = updated_shas(snap.shas(), written)
    state.commit_sha = commit or snap.commit
    state.last_sync_at = datetime.now(timezone.utc).isoformat()
    snapshots.save(state)
    log.info("Migrated %d legacy top-level entries into %d files.", len(forest), len(writes))
    return state
