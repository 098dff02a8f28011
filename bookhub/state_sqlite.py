from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .log import get_logger
from .model import Forest
from .serializer import forest_from_json, forest_to_json

log = get_logger(__name__)

SCHEMA_VERSION = 1


@dataclass
class SyncState:
    """Per-profile sync bookkeeping: the merge base and what the remote looked like."""

    profile: str
    base: Optional[Forest] = None
    remote_shas: Dict[str, str] = field(default_factory=dict)
    commit_sha: Optional[str] = None
    last_sync_at: Optional[str] = None
    conflict: bool = False
    conflict_detail: Optional[str] = None

    def set_conflict(self, detail: str) -> None:
        self.conflict = True
        self.conflict_detail = detail

    def clear_conflict(self) -> None:
        self.conflict = False
        self.conflict_detail = None


def init_state_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                profile TEXT PRIMARY KEY,
                base_json TEXT,
                commit_sha TEXT,
                last_sync_at TEXT,
                conflict INTEGER NOT NULL DEFAULT 0,
                conflict_detail TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS remote_shas (
                profile TEXT NOT NULL,
                path TEXT NOT NULL,
                sha TEXT NOT NULL,
                PRIMARY KEY (profile, path)
            )
            """
        )
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")


class SnapshotStore:
    """Sync state of a single profile inside the shared state database.

    State is read once when an operation starts and written once, in a single
    transaction, when it finishes.
    """

    def __init__(self, db_path: Path | str, profile: str):
        self.db_path = Path(db_path)
        self.profile = profile
        init_state_db(self.db_path)

    def exists(self) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM sync_state WHERE profile = ?", (self.profile,)).fetchone()
        return row is not None

    def load(self) -> SyncState:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT base_json, commit_sha, last_sync_at, conflict, conflict_detail FROM sync_state WHERE profile = ?",
                (self.profile,),
            ).fetchone()
            shas = {
                str(p): str(s)
                for p, s in conn.execute("SELECT path, sha FROM remote_shas WHERE profile = ?", (self.profile,))
            }
        if row is None:
            return SyncState(profile=self.profile)
        return SyncState(
            profile=self.profile,
            base=forest_from_json(row[0]) if row[0] else None,
            remote_shas=shas,
            commit_sha=row[1],
            last_sync_at=row[2],
            conflict=bool(row[3]),
            conflict_detail=row[4],
        )

    def save(self, state: SyncState) -> None:
        if state.profile != self.profile:
            raise ValueError(f"state for profile {state.profile!r} cannot be saved into {self.profile!r}")
        now = datetime.now(timezone.utc).isoformat()
        base_json = forest_to_json(state.base) if state.base is not None else None
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO sync_state (profile, base_json, commit_sha, last_sync_at, conflict, conflict_detail, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(profile) DO UPDATE SET
                        base_json=excluded.base_json,
                        commit_sha=excluded.commit_sha,
                        last_sync_at=excluded.last_sync_at,
                        conflict=excluded.conflict,
                        conflict_detail=excluded.conflict_detail,
                        updated_at=excluded.updated_at
                    """,
                    (
                        self.profile,
                        base_json,
                        state.commit_sha,
                        state.last_sync_at,
                        1 if state.conflict else 0,
                        state.conflict_detail,
                        now,
                    ),
                )
                conn.execute("DELETE FROM remote_shas WHERE profile = ?", (self.profile,))
                conn.executemany(
                    "INSERT INTO remote_shas (profile, path, sha) VALUES (?, ?, ?)",
                    [(self.profile, p, s) for p, s in sorted(state.remote_shas.items())],
                )
        finally:
            conn.close()
        log.debug("Saved sync state for profile %s (%d remote shas).", self.profile, len(state.remote_shas))

    def delete(self) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                conn.execute("DELETE FROM sync_state WHERE profile = ?", (self.profile,))
                conn.execute("DELETE FROM remote_shas WHERE profile = ?", (self.profile,))
        finally:
            conn.close()
