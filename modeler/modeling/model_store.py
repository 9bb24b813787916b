"""
Model Store

SQLite persistence for model definition documents.

Each definition is stored as one JSON document and is always written whole:
there is no partial update and no version check, so the last writer wins.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .model_tree import ModelDefinition

logger = logging.getLogger(__name__)


class ModelStore:
    """
    Manages model definition persistence.

    Uses SQLite for storage with JSON serialization.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize model store.

        Args:
            db_path: Path to SQLite database. Defaults to modeler/db/models.db
        """
        if db_path is None:
            db_dir = Path(__file__).parent.parent / "db"
            db_dir.mkdir(exist_ok=True)
            db_path = str(db_dir / "models.db")

        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS model_definitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    model_code TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    parent_id INTEGER DEFAULT 0,
                    status INTEGER DEFAULT 1,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_model_parent_id
                ON model_definitions(parent_id)
            """)
            conn.commit()

    def create(self, document: Dict[str, Any]) -> int:
        """
        Store a new model definition.

        Args:
            document: Whole definition document; any ``id`` in it is ignored

        Returns:
            Generated model ID
        """
        definition = ModelDefinition.from_dict(document)
        now = datetime.now(timezone.utc).isoformat()

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO model_definitions
                    (model_code, display_name, parent_id, status, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                definition.code,
                definition.display_name,
                definition.parent_id,
                definition.status,
                "{}",
                now,
                now,
            ))
            model_id = cursor.lastrowid
            definition.id = model_id
            conn.execute(
                "UPDATE model_definitions SET data = ? WHERE id = ?",
                (json.dumps(definition.to_dict()), model_id)
            )
            conn.commit()

        logger.info(f"Created model definition: {model_id}")
        return model_id

    def get(self, model_id: int) -> Optional[Dict[str, Any]]:
        """
        Get a model definition document by ID.

        Returns:
            The document if found, None otherwise
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT data FROM model_definitions WHERE id = ?",
                (model_id,)
            ).fetchone()

        if row:
            return json.loads(row["data"])
        return None

    def update(self, model_id: int, document: Dict[str, Any]) -> bool:
        """
        Overwrite a stored model definition with ``document``.

        Returns:
            True if updated, False if not found
        """
        definition = ModelDefinition.from_dict(document)
        definition.id = model_id
        now = datetime.now(timezone.utc).isoformat()

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE model_definitions
                SET model_code = ?, display_name = ?, parent_id = ?, status = ?,
                    data = ?, updated_at = ?
                WHERE id = ?
            """, (
                definition.code,
                definition.display_name,
                definition.parent_id,
                definition.status,
                json.dumps(definition.to_dict()),
                now,
                model_id,
            ))
            conn.commit()
            updated = cursor.rowcount > 0

        if updated:
            logger.info(f"Updated model definition: {model_id}")
        return updated

    def delete(self, model_id: int) -> bool:
        """
        Delete a model definition.

        Returns:
            True if deleted, False if not found
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM model_definitions WHERE id = ?",
                (model_id,)
            )
            conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted model definition: {model_id}")
        return deleted

    def list_all(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List stored model definitions, newest first.

        Args:
            parent_id: Only list definitions filed under this folder

        Returns:
            Summaries without the configuration tree
        """
        query = """
            SELECT id, model_code, display_name, parent_id, status, updated_at
            FROM model_definitions
        """
        params: tuple = ()
        if parent_id is not None:
            query += " WHERE parent_id = ?"
            params = (parent_id,)
        query += " ORDER BY updated_at DESC, id DESC"

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(query, params).fetchall()

        return [dict(row) for row in rows]
