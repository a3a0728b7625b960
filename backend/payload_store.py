"""Key -> blob table for image payloads moved out of question documents."""

import logging
from typing import Iterable, Optional, Set

from db import DbPath, get_connection


logger = logging.getLogger(__name__)


class PayloadStore:
    """Image payloads keyed ``{ownerId}_{fieldTag}_{discriminator}``.

    Every call is its own transaction; there is no atomicity across calls.
    """

    def __init__(self, db_path: DbPath) -> None:
        self.db_path = db_path

    def put(self, key: str, data: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO images (key, data)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    data = excluded.data,
                    created_at = CURRENT_TIMESTAMP
                """,
                (key, data),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("Stored payload %s (%d chars)", key, len(data))

    def get(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT data FROM images WHERE key = ?", (key,)).fetchone()
            return row["data"] if row is not None else None
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        self.delete_many([key])

    def delete_many(self, keys: Iterable[str]) -> int:
        """Delete every key that exists; missing keys are ignored."""
        keys = list(keys)
        if not keys:
            return 0
        conn = get_connection(self.db_path)
        try:
            cur = conn.executemany("DELETE FROM images WHERE key = ?", [(k,) for k in keys])
            conn.commit()
            deleted = cur.rowcount
        finally:
            conn.close()
        logger.debug("Deleted %d of %d payload keys", deleted, len(keys))
        return deleted

    def keys_with_prefix(self, prefix: str) -> Set[str]:
        # substr comparison keeps '%' and '_' in ids literal.
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT key FROM images WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchall()
            return {row["key"] for row in rows}
        finally:
            conn.close()

    def count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT COUNT(*) AS cnt FROM images").fetchone()
            return int(row["cnt"] if row and row["cnt"] is not None else 0)
        finally:
            conn.close()
