"""State database manager.

Persists the last-known attributes of every managed resource instance,
keyed by its logical address, together with outputs, a journal of every
apply and a single advisory lock.

ARCHITECTURE:
- One SQLite file per configuration (.converge/state.db by default)
- Every write runs in a transaction and bumps the state serial, so a
  saved plan can tell whether the state moved underneath it
- NO FALLBACKS. Hard failure if state.db is malformed or missing.
"""

from __future__ import annotations

import json
import os
import socket
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from converge.errors import StateError, StateLockedError
from converge.expressions.values import contains_unknown
from converge.graph.types import ResourceAddress
from converge.state.schema import TABLES
from converge.utils.logging import get_request_id, logger

SNAPSHOT_VERSION = 1
_LOCK_NAME = "state"
_ENTRY_COLUMNS = (
    "address, mode, type, name, index_key, provider, attributes_json, "
    "dependencies_json, schema_version, updated_at"
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def default_lock_holder() -> str:
    return f"{os.getenv('USER', 'unknown')}@{socket.gethostname()}:{os.getpid()}"


@dataclass
class StateEntry:
    """Last-known state of one resource instance."""

    address: str
    type: str
    name: str
    provider: str
    attributes: dict[str, Any]
    dependencies: list[str] = field(default_factory=list)
    mode: str = "managed"
    index_key: Any = None
    schema_version: int = 1
    updated_at: str = ""
    deposed: str | None = None

    @property
    def id(self) -> str | None:
        return self.attributes.get("id")

    @property
    def resource_address(self) -> ResourceAddress:
        return ResourceAddress.parse(self.address)

    @property
    def block(self) -> str:
        return self.resource_address.block

    def to_dict(self) -> dict[str, Any]:
        data = {
            "address": self.address,
            "mode": self.mode,
            "type": self.type,
            "name": self.name,
            "index_key": self.index_key,
            "provider": self.provider,
            "attributes": self.attributes,
            "dependencies": self.dependencies,
            "schema_version": self.schema_version,
            "updated_at": self.updated_at,
        }
        if self.deposed:
            data["deposed"] = self.deposed
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateEntry:
        try:
            return cls(
                address=data["address"],
                type=data["type"],
                name=data["name"],
                provider=data["provider"],
                attributes=dict(data["attributes"]),
                dependencies=list(data.get("dependencies", [])),
                mode=data.get("mode", "managed"),
                index_key=data.get("index_key"),
                schema_version=int(data.get("schema_version", 1)),
                updated_at=data.get("updated_at", ""),
                deposed=data.get("deposed"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"malformed state entry {data!r}: {e}") from None


class StateStore:
    """Manages state database operations.

    NO FALLBACKS. Hard failure if state.db is malformed or missing.
    """

    def __init__(self, db_path: Path):
        """Open an existing state database.

        Raises:
            StateError: If state.db doesn't exist (use init_database first)
        """
        db_path = Path(db_path)
        if not db_path.exists():
            raise StateError(f"State database not found: {db_path}")

        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._validate_schema()

    @classmethod
    def init_database(cls, db_path: Path) -> StateStore:
        """Create state.db if it doesn't exist and initialize schema."""
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        manager = cls.__new__(cls)
        manager.db_path = db_path
        manager.conn = sqlite3.connect(str(db_path))
        manager.conn.row_factory = sqlite3.Row
        manager.create_schema()
        return manager

    def create_schema(self) -> None:
        """Create state tables and the lineage/serial metadata."""
        with self.conn:
            cursor = self.conn.cursor()
            for schema in TABLES.values():
                cursor.execute(schema.create_table_sql())
                for index_sql in schema.create_indexes_sql():
                    cursor.execute(index_sql)
            cursor.execute(
                "INSERT OR IGNORE INTO state_meta (key, value) VALUES ('lineage', ?)",
                (str(uuid.uuid4()),),
            )
            cursor.execute("INSERT OR IGNORE INTO state_meta (key, value) VALUES ('serial', '0')")
            cursor.execute(
                "INSERT OR IGNORE INTO state_meta (key, value) VALUES ('version', ?)",
                (str(SNAPSHOT_VERSION),),
            )

    def _validate_schema(self) -> None:
        cursor = self.conn.cursor()
        problems = []
        for schema in TABLES.values():
            ok, errors = schema.validate_against_db(cursor)
            if not ok:
                problems.extend(errors)
        if problems:
            raise StateError(f"State database {self.db_path} is malformed: " + "; ".join(problems))

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _meta(self, key: str) -> str:
        row = self.conn.execute("SELECT value FROM state_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            raise StateError(f"state_meta is missing {key!r}")
        return row["value"]

    def lineage(self) -> str:
        return self._meta("lineage")

    def serial(self) -> int:
        return int(self._meta("serial"))

    def _bump_serial(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute(
            "UPDATE state_meta SET value = CAST(CAST(value AS INTEGER) + 1 AS TEXT) WHERE key = 'serial'"
        )

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def get(self, address: str) -> StateEntry | None:
        row = self.conn.execute("SELECT * FROM resources WHERE address = ?", (address,)).fetchone()
        return self._row_to_entry(row) if row else None

    def put(self, entry: StateEntry, depose_prior: bool = False) -> str | None:
        """Insert or replace one instance. NO FALLBACKS: unknown values are rejected.

        With ``depose_prior`` the entry currently at the address moves to the
        deposed table in the same transaction, so the old object stays tracked
        until its delete succeeds. Returns the deposed key, if any.
        """
        if contains_unknown(entry.attributes):
            raise StateError(f"refusing to persist unknown attribute values for {entry.address}")
        address = str(ResourceAddress.parse(entry.address))
        entry.updated_at = _now()
        deposed_key = None
        with self.conn:
            cursor = self.conn.cursor()
            if depose_prior:
                key = uuid.uuid4().hex[:8]
                cursor.execute(
                    f"""INSERT INTO deposed (deposed_key, {_ENTRY_COLUMNS})
                        SELECT ?, {_ENTRY_COLUMNS} FROM resources WHERE address = ?""",
                    (key, address),
                )
                if cursor.rowcount > 0:
                    deposed_key = key
            _insert_entry(cursor, "resources", entry, replace=True)
            self._bump_serial(cursor)
        if deposed_key:
            logger.info("State: previous object of {} deposed as {}", address, deposed_key)
        logger.debug("State: stored {}", entry.address)
        return deposed_key

    def deposed(self, prefix: str | None = None) -> list[StateEntry]:
        """Deposed objects still waiting for their delete, oldest first."""
        if prefix:
            rows = self.conn.execute(
                """SELECT * FROM deposed WHERE address = ? OR address LIKE ? ESCAPE '\\'
                   ORDER BY updated_at, deposed_key""",
                (prefix, _like_prefix(prefix)),
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM deposed ORDER BY updated_at, deposed_key").fetchall()
        return [self._row_to_entry(row) for row in rows]

    def remove_deposed(self, deposed_key: str) -> bool:
        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM deposed WHERE deposed_key = ?", (deposed_key,))
            removed = cursor.rowcount > 0
            if removed:
                self._bump_serial(cursor)
        if removed:
            logger.debug("State: removed deposed object {}", deposed_key)
        return removed

    def remove(self, address: str) -> bool:
        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM resources WHERE address = ?", (address,))
            removed = cursor.rowcount > 0
            if removed:
                self._bump_serial(cursor)
        if removed:
            logger.debug("State: removed {}", address)
        return removed

    def list(self, prefix: str | None = None) -> list[StateEntry]:
        """All entries, or those of one block / instance address when ``prefix`` is given."""
        if prefix:
            rows = self.conn.execute(
                "SELECT * FROM resources WHERE address = ? OR address LIKE ? ESCAPE '\\'",
                (prefix, _like_prefix(prefix)),
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM resources").fetchall()
        entries = [self._row_to_entry(row) for row in rows]
        entries.sort(key=lambda e: e.resource_address.sort_key())
        return entries

    def _row_to_entry(self, row: sqlite3.Row) -> StateEntry:
        try:
            return StateEntry(
                address=row["address"],
                mode=row["mode"],
                type=row["type"],
                name=row["name"],
                index_key=json.loads(row["index_key"]) if row["index_key"] else None,
                provider=row["provider"],
                attributes=json.loads(row["attributes_json"]),
                dependencies=json.loads(row["dependencies_json"]),
                schema_version=row["schema_version"],
                updated_at=row["updated_at"],
                deposed=row["deposed_key"] if "deposed_key" in row.keys() else None,
            )
        except json.JSONDecodeError as e:
            raise StateError(f"corrupt state row for {row['address']}: {e}") from None

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def set_outputs(self, outputs: dict[str, dict[str, Any]]) -> None:
        """Replace all outputs. ``outputs`` maps name -> {'value': ..., 'sensitive': bool}."""
        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM outputs")
            for name, output in sorted(outputs.items()):
                cursor.execute(
                    "INSERT INTO outputs (name, value_json, sensitive) VALUES (?, ?, ?)",
                    (name, json.dumps(output["value"]), int(bool(output.get("sensitive")))),
                )
            self._bump_serial(cursor)

    def outputs(self) -> dict[str, dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM outputs ORDER BY name").fetchall()
        return {
            row["name"]: {"value": json.loads(row["value_json"]), "sensitive": bool(row["sensitive"])}
            for row in rows
        }

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export(self) -> dict[str, Any]:
        """JSON-serialisable snapshot of the whole state."""
        return {
            "version": SNAPSHOT_VERSION,
            "lineage": self.lineage(),
            "serial": self.serial(),
            "resources": [entry.to_dict() for entry in self.list()],
            "deposed": [entry.to_dict() for entry in self.deposed()],
            "outputs": self.outputs(),
        }

    def import_(self, snapshot: dict[str, Any], force: bool = False) -> None:
        """Replace the state with a snapshot produced by export().

        Refuses a snapshot from another lineage or with an older serial
        unless ``force`` is set.
        """
        if not isinstance(snapshot, dict) or snapshot.get("version") != SNAPSHOT_VERSION:
            raise StateError(f"unsupported state snapshot (expected version {SNAPSHOT_VERSION})")
        lineage = snapshot.get("lineage")
        serial = int(snapshot.get("serial", 0))
        if not force:
            if lineage != self.lineage():
                raise StateError(
                    f"snapshot lineage {lineage} does not match state lineage {self.lineage()}"
                )
            if serial < self.serial():
                raise StateError(
                    f"snapshot serial {serial} is older than current serial {self.serial()}"
                )

        entries = [StateEntry.from_dict(item) for item in snapshot.get("resources", [])]
        deposed = [StateEntry.from_dict(item) for item in snapshot.get("deposed", [])]
        if any(not entry.deposed for entry in deposed):
            raise StateError("deposed snapshot entries need a deposed key")
        outputs = snapshot.get("outputs", {})
        new_serial = max(serial, self.serial() + 1)

        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM resources")
            cursor.execute("DELETE FROM deposed")
            cursor.execute("DELETE FROM outputs")
            for entry in entries:
                entry.updated_at = entry.updated_at or _now()
                _insert_entry(cursor, "resources", entry)
            for entry in deposed:
                entry.updated_at = entry.updated_at or _now()
                _insert_entry(cursor, "deposed", entry)
            for name, output in outputs.items():
                cursor.execute(
                    "INSERT INTO outputs (name, value_json, sensitive) VALUES (?, ?, ?)",
                    (name, json.dumps(output["value"]), int(bool(output.get("sensitive")))),
                )
            if lineage and force:
                cursor.execute("UPDATE state_meta SET value = ? WHERE key = 'lineage'", (lineage,))
            cursor.execute(
                "UPDATE state_meta SET value = ? WHERE key = 'serial'", (str(new_serial),)
            )
        logger.info("State: imported {} resources (serial {})", len(entries), new_serial)

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def start_run(self, kind: str, summary: dict[str, Any] | None = None) -> int:
        with self.conn:
            cursor = self.conn.cursor()
            cursor.execute(
                """INSERT INTO apply_runs (kind, status, started_at, request_id, summary_json)
                   VALUES (?, 'running', ?, ?, ?)""",
                (kind, _now(), get_request_id(), json.dumps(summary or {})),
            )
            return cursor.lastrowid

    def record_event(
        self,
        run_id: int,
        address: str,
        action: str,
        status: str,
        attempt: int = 1,
        message: str | None = None,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT INTO apply_events
                   (run_id, address, action, status, attempt, message, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (run_id, address, action, status, attempt, message, _now()),
            )

    def finish_run(self, run_id: int, status: str, summary: dict[str, Any] | None = None) -> None:
        with self.conn:
            if summary is None:
                self.conn.execute(
                    "UPDATE apply_runs SET status = ?, finished_at = ? WHERE id = ?",
                    (status, _now(), run_id),
                )
            else:
                self.conn.execute(
                    "UPDATE apply_runs SET status = ?, finished_at = ?, summary_json = ? WHERE id = ?",
                    (status, _now(), json.dumps(summary), run_id),
                )

    def journal(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent runs first, each with its events."""
        runs = self.conn.execute(
            "SELECT * FROM apply_runs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        result = []
        for run in runs:
            events = self.conn.execute(
                "SELECT * FROM apply_events WHERE run_id = ? ORDER BY id", (run["id"],)
            ).fetchall()
            result.append(
                {
                    "id": run["id"],
                    "kind": run["kind"],
                    "status": run["status"],
                    "started_at": run["started_at"],
                    "finished_at": run["finished_at"],
                    "request_id": run["request_id"],
                    "summary": json.loads(run["summary_json"]),
                    "events": [
                        {
                            "address": event["address"],
                            "action": event["action"],
                            "status": event["status"],
                            "attempt": event["attempt"],
                            "message": event["message"],
                            "created_at": event["created_at"],
                        }
                        for event in events
                    ],
                }
            )
        return result

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def acquire_lock(self, holder: str | None = None, operation: str = "apply") -> str:
        """Take the state lock or raise StateLockedError."""
        holder = holder or default_lock_holder()
        lock_id = str(uuid.uuid4())
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO locks (name, lock_id, holder, operation, acquired_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (_LOCK_NAME, lock_id, holder, operation, _now()),
                )
        except sqlite3.IntegrityError:
            current = self.current_lock()
            if current is None:
                # Released between our insert and the lookup; try once more
                return self.acquire_lock(holder, operation)
            raise StateLockedError(current["lock_id"], current["holder"], current["acquired_at"]) from None
        logger.debug("State lock {} acquired by {} for {}", lock_id, holder, operation)
        return lock_id

    def release_lock(self, lock_id: str) -> None:
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM locks WHERE name = ? AND lock_id = ?", (_LOCK_NAME, lock_id)
            )
        if cursor.rowcount == 0:
            raise StateError(f"lock {lock_id} is not held")

    def force_unlock(self, lock_id: str) -> bool:
        """Clear a lock left behind by a dead process."""
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM locks WHERE name = ? AND lock_id = ?", (_LOCK_NAME, lock_id)
            )
        if cursor.rowcount:
            logger.warning("State lock {} force-released", lock_id)
        return cursor.rowcount > 0

    def current_lock(self) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM locks WHERE name = ?", (_LOCK_NAME,)).fetchone()
        return dict(row) if row else None

    @contextmanager
    def locked(self, holder: str | None = None, operation: str = "apply") -> Iterator[str]:
        lock_id = self.acquire_lock(holder, operation)
        try:
            yield lock_id
        finally:
            self.release_lock(lock_id)


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "[%"


def _insert_entry(cursor: sqlite3.Cursor, table: str, entry: StateEntry, replace: bool = False) -> None:
    address = ResourceAddress.parse(entry.address)
    columns = _ENTRY_COLUMNS
    values = [
        str(address),
        entry.mode,
        entry.type,
        entry.name,
        json.dumps(address.key),
        entry.provider,
        json.dumps(entry.attributes, sort_keys=True),
        json.dumps(sorted(entry.dependencies)),
        entry.schema_version,
        entry.updated_at,
    ]
    if table == "deposed":
        columns = "deposed_key, " + columns
        values.insert(0, entry.deposed)
    verb = "INSERT OR REPLACE" if replace else "INSERT"
    placeholders = ", ".join("?" for _ in values)
    cursor.execute(f"{verb} INTO {table} ({columns}) VALUES ({placeholders})", values)
