"""JSON document repositories, the legacy key-value table and migration records."""

import json
from typing import Dict, List, Optional

from db import DOCUMENT_TABLES, DbPath, get_connection


class DocumentRepository:
    """Upsert/get/list/delete for one entity kind.

    Each repository is bound to a single table, so a question repository
    never touches session rows.
    """

    def __init__(self, db_path: DbPath, table: str, sort_field: str) -> None:
        if table not in DOCUMENT_TABLES:
            raise ValueError(f"Unknown document table: {table}")
        self.db_path = db_path
        self.table = table
        self.sort_field = sort_field

    def put(self, entity: Dict, owner_id: Optional[str] = None) -> None:
        sort_key = int(entity.get(self.sort_field) or 0)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"""
                INSERT INTO {self.table} (id, owner_id, sort_key, json_data)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    sort_key = excluded.sort_key,
                    json_data = excluded.json_data
                """,
                (entity["id"], owner_id, sort_key, json.dumps(entity, ensure_ascii=False)),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, entity_id: str) -> Optional[Dict]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT json_data FROM {self.table} WHERE id = ?",
                (entity_id,),
            ).fetchone()
            return json.loads(row["json_data"]) if row is not None else None
        finally:
            conn.close()

    def exists(self, entity_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT 1 FROM {self.table} WHERE id = ?",
                (entity_id,),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def get_all(self, owner_id: Optional[str] = None) -> List[Dict]:
        conn = get_connection(self.db_path)
        try:
            if owner_id is None:
                rows = conn.execute(f"SELECT json_data FROM {self.table}").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT json_data FROM {self.table} WHERE owner_id = ?",
                    (owner_id,),
                ).fetchall()
            return [json.loads(row["json_data"]) for row in rows]
        finally:
            conn.close()

    def delete(self, entity_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (entity_id,))
            conn.commit()
        finally:
            conn.close()


class KeyValueStore:
    """Flat string key -> string value storage used by the legacy layout."""

    def __init__(self, db_path: DbPath) -> None:
        self.db_path = db_path

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row["value"] if row is not None else None
        finally:
            conn.close()

    def set(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


class MigrationLog:
    """Persisted record of which migrations have completed for which owner."""

    def __init__(self, db_path: DbPath) -> None:
        self.db_path = db_path

    def is_applied(self, name: str, owner_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM migrations WHERE name = ? AND owner_id = ?",
                (name, owner_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def mark_applied(self, name: str, owner_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO migrations (name, owner_id) VALUES (?, ?)",
                (name, owner_id),
            )
            conn.commit()
        finally:
            conn.close()
