"""SQLite persistence for rotation configuration and queues."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from rotabot.errors import StorageFailure
from rotabot.models import Rotation, RotationConfig

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class RotationStore:
    """Two keyed collections, (group_id, name) -> config and (group_id, name) -> queue.

    Every public write runs in a single transaction, and any ``sqlite3.Error``
    surfaces as :class:`StorageFailure`.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Cannot open {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageFailure(str(exc)) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or verify schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS rotation_configs (
                group_id TEXT NOT NULL,
                name TEXT NOT NULL,
                config_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (group_id, name)
            );

            CREATE TABLE IF NOT EXISTS rotation_queues (
                group_id TEXT NOT NULL,
                name TEXT NOT NULL,
                queue_json TEXT NOT NULL,
                PRIMARY KEY (group_id, name)
            );
            """
        )

    def get_rotation(self, group_id: str, name: str) -> Rotation | None:
        with self._connect() as conn:
            config_row = conn.execute(
                "SELECT config_json FROM rotation_configs WHERE group_id = ? AND name = ?",
                (group_id, name),
            ).fetchone()
            queue_row = conn.execute(
                "SELECT queue_json FROM rotation_queues WHERE group_id = ? AND name = ?",
                (group_id, name),
            ).fetchone()
        if config_row is None:
            return None
        try:
            config = RotationConfig.model_validate_json(config_row["config_json"])
        except ValidationError as exc:
            raise StorageFailure(f"Corrupt configuration for {group_id}/{name}: {exc}") from exc
        queue = json.loads(queue_row["queue_json"]) if queue_row else []
        return Rotation(group_id=group_id, name=name, config=config, queue=queue)

    def list_rotations(self, group_id: str | None = None) -> list[Rotation]:
        """Load every rotation (optionally of one group). Unparsable rows are skipped."""

        query = """
            SELECT c.group_id, c.name, c.config_json, q.queue_json
            FROM rotation_configs c
            LEFT JOIN rotation_queues q ON q.group_id = c.group_id AND q.name = c.name
        """
        params: tuple[str, ...] = ()
        if group_id is not None:
            query += " WHERE c.group_id = ?"
            params = (group_id,)
        query += " ORDER BY c.group_id, c.name"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        rotations: list[Rotation] = []
        for row in rows:
            try:
                config = RotationConfig.model_validate_json(row["config_json"])
            except ValidationError as exc:
                LOGGER.warning("Skipping unreadable rotation %s/%s: %s", row["group_id"], row["name"], exc)
                continue
            queue = json.loads(row["queue_json"]) if row["queue_json"] else []
            rotations.append(
                Rotation(group_id=row["group_id"], name=row["name"], config=config, queue=queue)
            )
        return rotations

    def get_queue(self, group_id: str, name: str) -> list[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT queue_json FROM rotation_queues WHERE group_id = ? AND name = ?",
                (group_id, name),
            ).fetchone()
        return json.loads(row["queue_json"]) if row else []

    def save_queue(self, group_id: str, name: str, queue: list[str]) -> None:
        with self._connect() as conn:
            _upsert_queue(conn, group_id, name, queue)

    def save_rotation(self, rotation: Rotation) -> None:
        """Write config and queue together."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rotation_configs(group_id, name, config_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_id, name) DO UPDATE SET
                    config_json=excluded.config_json,
                    updated_at=excluded.updated_at
                """,
                (rotation.group_id, rotation.name, rotation.config.model_dump_json(), _utc_now_iso()),
            )
            _upsert_queue(conn, rotation.group_id, rotation.name, rotation.queue)

    def delete_rotation(self, group_id: str, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM rotation_configs WHERE group_id = ? AND name = ?", (group_id, name)
            )
            conn.execute("DELETE FROM rotation_queues WHERE group_id = ? AND name = ?", (group_id, name))
            return cur.rowcount > 0

    def is_member(self, participant_id: str) -> bool:
        """True if the participant belongs to any configured rotation."""

        return any(participant_id in rotation.members for rotation in self.list_rotations())


def _upsert_queue(conn: sqlite3.Connection, group_id: str, name: str, queue: list[str]) -> None:
    conn.execute(
        """
        INSERT INTO rotation_queues(group_id, name, queue_json)
        VALUES (?, ?, ?)
        ON CONFLICT(group_id, name) DO UPDATE SET queue_json=excluded.queue_json
        """,
        (group_id, name, json.dumps(queue)),
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
