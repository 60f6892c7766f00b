from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from .models.base import DBSerializableModel
from .models.subscription import AccountSubscription
from .models.usage import UsageEvent


# The whole durable footprint: one mutable row per account plus the append-only log
MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    AccountSubscription,
    UsageEvent,
]

_SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "BIGINT",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMP",
        "object": "JSONB",
        "array": "JSONB",
    },
    "mysql": {
        "integer": "BIGINT",
        "number": "DOUBLE",
        "boolean": "BOOLEAN",
        "string": "VARCHAR(255)",
        "datetime": "DATETIME(3)",
        "object": "JSON",
        "array": "JSON",
    },
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic logical schema for every persisted model; the SQL and
    document renderers both start from this.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    if dialect not in _SQL_TYPES:
        raise ValueError(f"Unsupported SQL dialect: {dialect}")

    statements: List[str] = []
    for table_name, table in schema.items():
        pk = table.get("primary_key") or "id"
        required = set(table.get("required", []))
        columns: List[str] = []
        for field_name, meta in table["properties"].items():
            sql_type = _map_logical_to_sql(meta["type"], dialect)
            nullable = "NOT NULL" if field_name in required or field_name == pk else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for field_name in table.get("unique", []):
            statements.append(
                f'CREATE UNIQUE INDEX IF NOT EXISTS "ux_{table_name}_{field_name}" '
                f'ON "{table_name}" ("{field_name}");\n'
            )
    return "\n".join(statements)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON description usable as a MongoDB collection validator source."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    return _SQL_TYPES[dialect].get(logical_type.lower(), _SQL_TYPES[dialect]["string"])


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the credit metering ledger and usage log."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        choices=sorted(_SQL_TYPES),
        default="postgres",
        help="SQL dialect for --backend sql.",
    )
    parser.add_argument("--output", type=Path, help="Write to this file instead of stdout.")
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output:
        args.output.write_text(rendered, encoding="utf-8")
    else:
        print(rendered)


if __name__ == "__main__":
    main()
