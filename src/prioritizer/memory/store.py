"""Durable storage for graph snapshots, baseline plans, and reflections."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..config import EngineSettings
from ..errors import StaleReferenceError
from ..graph.relationships import RelationshipGraph
from .reflections import ReflectionStore
from .schema import OrderedPlan, utc_now

DEFAULT_DB_PATH = Path("data/prioritizer.sqlite")
LOGGER = logging.getLogger(__name__)

SNAPSHOT_KINDS = ("graph", "baseline")


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class SnapshotStore:
    """SQLite-backed, versioned snapshots with optimistic concurrency.

    Each save appends a new version for its kind. Passing ``expected_version``
    makes the save conditional on nobody else having written in between.
    """

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "prioritizer" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists() and resolved.exists() and os.access(resolved, os.R_OK):
            try:
                shutil.copy2(resolved, fallback)
            except OSError:
                LOGGER.warning("Could not copy %s to fallback location %s", resolved, fallback)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()
        self.reflections = ReflectionStore(self._conn)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "SnapshotStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], base_dir: Path | None = None) -> "SnapshotStore":
        return cls(EngineSettings.from_config(config, base_dir=base_dir).db_path)

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        return connection

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Snapshot store is closed.")
        return self._conn

    def _bootstrap(self) -> None:
        self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
                kind TEXT NOT NULL,
                version INTEGER NOT NULL,
                label TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (kind, version)
            );

            CREATE TABLE IF NOT EXISTS reflections (
                id TEXT PRIMARY KEY,
                text TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_reflections_active
                ON reflections(is_active, created_at DESC);
            """
        )
        self.connection.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        connection = self.connection
        try:
            connection.execute("BEGIN IMMEDIATE")
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise

    # Generic snapshot operations -----------------------------------------------------
    def current_version(self, kind: str) -> int:
        row = self.connection.execute(
            "SELECT MAX(version) AS version FROM snapshots WHERE kind = ?",
            (kind,),
        ).fetchone()
        return int(row["version"] or 0)

    def _save(
        self,
        kind: str,
        payload: Mapping[str, Any],
        *,
        expected_version: Optional[int],
        label: str,
    ) -> int:
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT MAX(version) AS version FROM snapshots WHERE kind = ?",
                (kind,),
            ).fetchone()
            current = int(row["version"] or 0)
            if expected_version is not None and expected_version != current:
                raise StaleReferenceError(
                    f"{kind} snapshot is at version {current}, expected {expected_version}",
                    context={"kind": kind, "current_version": current, "expected_version": expected_version},
                )
            version = current + 1
            connection.execute(
                """
                INSERT INTO snapshots (kind, version, label, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (kind, version, label, json.dumps(dict(payload)), _as_iso(utc_now())),
            )
        LOGGER.info("Saved %s snapshot version %d", kind, version)
        return version

    def _load(self, kind: str, version: Optional[int]) -> Optional[Tuple[int, Dict[str, Any]]]:
        if version is None:
            row = self.connection.execute(
                "SELECT version, payload FROM snapshots WHERE kind = ? ORDER BY version DESC LIMIT 1",
                (kind,),
            ).fetchone()
        else:
            row = self.connection.execute(
                "SELECT version, payload FROM snapshots WHERE kind = ? AND version = ?",
                (kind, version),
            ).fetchone()
        if not row:
            return None
        return int(row["version"]), _load_json(row["payload"], default={})

    def history(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT kind, version, label, created_at FROM snapshots"
        params: Tuple[Any, ...] = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY kind ASC, version ASC"
        return [
            {
                "kind": row["kind"],
                "version": row["version"],
                "label": row["label"],
                "created_at": row["created_at"],
            }
            for row in self.connection.execute(query, params).fetchall()
        ]

    # Graph snapshots -----------------------------------------------------------------
    def save_graph(
        self,
        graph: RelationshipGraph,
        *,
        expected_version: Optional[int] = None,
        label: str = "",
    ) -> int:
        return self._save("graph", graph.to_dict(), expected_version=expected_version, label=label)

    def latest_graph(self) -> Optional[RelationshipGraph]:
        return self.get_graph()

    def get_graph(self, version: Optional[int] = None) -> Optional[RelationshipGraph]:
        """Load a graph snapshot; its ``version`` is the stored snapshot version."""
        loaded = self._load("graph", version)
        if loaded is None:
            return None
        stored_version, payload = loaded
        return RelationshipGraph.from_dict({**payload, "version": stored_version})

    # Baseline plans ------------------------------------------------------------------
    def save_baseline(
        self,
        plan: OrderedPlan,
        *,
        expected_version: Optional[int] = None,
        label: str = "",
    ) -> int:
        return self._save("baseline", plan.model_dump(mode="json"), expected_version=expected_version, label=label)

    def latest_baseline(self) -> Optional[Tuple[int, OrderedPlan]]:
        return self.get_baseline()

    def get_baseline(self, version: Optional[int] = None) -> Optional[Tuple[int, OrderedPlan]]:
        loaded = self._load("baseline", version)
        if loaded is None:
            return None
        stored_version, payload = loaded
        return stored_version, OrderedPlan.model_validate(payload)
