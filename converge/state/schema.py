"""State database schema - single source of truth for state.db tables."""

import sqlite3
from dataclasses import dataclass, field


@dataclass
class Column:
    """Represents a database column with type and constraints."""

    name: str
    type: str
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False
    autoincrement: bool = False

    def to_sql(self) -> str:
        """Generate SQL column definition."""
        parts = [self.name, self.type]
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.primary_key:
            parts.append("PRIMARY KEY")
            if self.autoincrement and self.type.upper() == "INTEGER":
                parts.append("AUTOINCREMENT")
        return " ".join(parts)


@dataclass
class TableSchema:
    """Represents a complete table schema."""

    name: str
    columns: list[Column]
    indexes: list[tuple[str, list[str]]] = field(default_factory=list)

    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    def create_table_sql(self) -> str:
        col_defs = [col.to_sql() for col in self.columns]
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    " + ",\n    ".join(col_defs) + "\n)"

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS {idx_name} ON {self.name} ({', '.join(idx_cols)})"
            for idx_name, idx_cols in self.indexes
        ]

    def validate_against_db(self, cursor: sqlite3.Cursor) -> tuple[bool, list[str]]:
        """Validate that the actual database table matches this schema."""
        errors = []

        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (self.name,))
        if not cursor.fetchone():
            errors.append(f"Table {self.name} does not exist")
            return False, errors

        cursor.execute(f"PRAGMA table_info({self.name})")
        actual_cols = {row[1]: row[2] for row in cursor.fetchall()}

        for col in self.columns:
            if col.name not in actual_cols:
                errors.append(f"Column {self.name}.{col.name} missing in database")
            elif actual_cols[col.name].upper() != col.type.upper():
                errors.append(
                    f"Column {self.name}.{col.name} type mismatch: "
                    f"expected {col.type}, got {actual_cols[col.name]}"
                )

        return len(errors) == 0, errors


STATE_META = TableSchema(
    name="state_meta",
    columns=[
        Column("key", "TEXT", nullable=False, primary_key=True),
        Column("value", "TEXT", nullable=False),
    ],
)

RESOURCES = TableSchema(
    name="resources",
    columns=[
        Column("address", "TEXT", nullable=False, primary_key=True),
        Column("mode", "TEXT", nullable=False, default="'managed'"),
        Column("type", "TEXT", nullable=False),
        Column("name", "TEXT", nullable=False),
        Column("index_key", "TEXT"),  # JSON: null, 0, "key"
        Column("provider", "TEXT", nullable=False),
        Column("attributes_json", "TEXT", nullable=False),
        Column("dependencies_json", "TEXT", nullable=False, default="'[]'"),
        Column("schema_version", "INTEGER", nullable=False, default="1"),
        Column("updated_at", "TEXT", nullable=False),
    ],
    indexes=[
        ("idx_resources_type", ["type"]),
    ],
)

# Objects replaced with create_before_destroy whose delete has not succeeded yet
DEPOSED = TableSchema(
    name="deposed",
    columns=[
        Column("deposed_key", "TEXT", nullable=False, primary_key=True),
        Column("address", "TEXT", nullable=False),
        Column("mode", "TEXT", nullable=False, default="'managed'"),
        Column("type", "TEXT", nullable=False),
        Column("name", "TEXT", nullable=False),
        Column("index_key", "TEXT"),
        Column("provider", "TEXT", nullable=False),
        Column("attributes_json", "TEXT", nullable=False),
        Column("dependencies_json", "TEXT", nullable=False, default="'[]'"),
        Column("schema_version", "INTEGER", nullable=False, default="1"),
        Column("updated_at", "TEXT", nullable=False),
    ],
    indexes=[
        ("idx_deposed_address", ["address"]),
    ],
)

OUTPUTS = TableSchema(
    name="outputs",
    columns=[
        Column("name", "TEXT", nullable=False, primary_key=True),
        Column("value_json", "TEXT", nullable=False),
        Column("sensitive", "INTEGER", nullable=False, default="0"),
    ],
)

APPLY_RUNS = TableSchema(
    name="apply_runs",
    columns=[
        Column("id", "INTEGER", nullable=False, primary_key=True, autoincrement=True),
        Column("kind", "TEXT", nullable=False),  # apply, destroy, refresh, import
        Column("status", "TEXT", nullable=False),  # running, succeeded, incomplete, failed
        Column("started_at", "TEXT", nullable=False),
        Column("finished_at", "TEXT"),
        Column("request_id", "TEXT"),
        Column("summary_json", "TEXT", nullable=False, default="'{}'"),
    ],
)

APPLY_EVENTS = TableSchema(
    name="apply_events",
    columns=[
        Column("id", "INTEGER", nullable=False, primary_key=True, autoincrement=True),
        Column("run_id", "INTEGER", nullable=False),
        Column("address", "TEXT", nullable=False),
        Column("action", "TEXT", nullable=False),
        Column("status", "TEXT", nullable=False),
        Column("attempt", "INTEGER", nullable=False, default="1"),
        Column("message", "TEXT"),
        Column("created_at", "TEXT", nullable=False),
    ],
    indexes=[
        ("idx_apply_events_run", ["run_id"]),
        ("idx_apply_events_address", ["address"]),
    ],
)

LOCKS = TableSchema(
    name="locks",
    columns=[
        Column("name", "TEXT", nullable=False, primary_key=True),
        Column("lock_id", "TEXT", nullable=False),
        Column("holder", "TEXT", nullable=False),
        Column("operation", "TEXT", nullable=False),
        Column("acquired_at", "TEXT", nullable=False),
    ],
)

TABLES: dict[str, TableSchema] = {
    schema.name: schema
    for schema in (STATE_META, RESOURCES, DEPOSED, OUTPUTS, APPLY_RUNS, APPLY_EVENTS, LOCKS)
}
