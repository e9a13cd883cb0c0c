from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.activity import ActivityRecord
from .models.base import DBSerializableModel
from .models.credits import CreditBalance
from .models.ledger import LedgerEntry


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    CreditBalance,
    ActivityRecord,
    LedgerEntry,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic logical schema for all persisted models, keyed by
    collection name. SQL and document-store renderers both start from this.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Render CREATE TABLE / CREATE INDEX statements. For production you would
    typically feed this into a migration tool rather than run it directly.
    """
    statements: List[str] = []
    for table_name, table in schema.items():
        pk = table.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in table["properties"].items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in table.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for index in table.get("indexes", []):
            fields = [part["field"] for part in index]
            name = f"ix_{table_name}_" + "_".join(f.lower() for f in fields)
            cols = ", ".join(
                f'"{part["field"]}"' + (" DESC" if part["direction"] < 0 else "")
                for part in index
            )
            statements.append(f'CREATE INDEX IF NOT EXISTS "{name}" ON "{table_name}" ({cols});\n')
    return "\n".join(statements)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    JSON description usable to configure validators and indexes for a
    document database such as MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "TEXT"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate store schemas for the credit metering models."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
