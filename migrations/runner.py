"""
Version-ordered migration runner for the issue tracker's SQLite store.

Each module in ``migrations/versions`` is named ``NNN_description.py`` and
exposes ``upgrade(conn)``. Applied versions are recorded in
``schema_migrations`` so each upgrade runs once per database file.
"""

import importlib
import logging
import sqlite3
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)


class MigrationRunner:
    """Runs pending schema migrations against one database file."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self.migrations_dir = Path(__file__).parent / 'versions'

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_migrations_table(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()

    def _get_current_version(self, conn: sqlite3.Connection) -> int:
        result = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return result[0] or 0

    def _get_migration_modules(self) -> List[Tuple[int, str]]:
        """Return (version, module_name) pairs sorted by version."""
        migrations = []
        for file in self.migrations_dir.glob('*.py'):
            if file.name.startswith('_'):
                continue
            try:
                version = int(file.stem.split('_')[0])
            except ValueError:
                logger.warning(f"[Migrations] Skipping invalid migration filename: {file.name}")
                continue
            migrations.append((version, file.stem))
        return sorted(migrations)

    def run_migrations(self) -> int:
        """Apply all pending migrations. Returns the number applied."""
        conn = self._get_conn()
        applied = 0
        try:
            self._ensure_migrations_table(conn)
            current_version = self._get_current_version(conn)

            for version, name in self._get_migration_modules():
                if version <= current_version:
                    continue
                logger.info(f"[Migrations] Running {version}: {name}")
                module = importlib.import_module(f'migrations.versions.{name}')
                try:
                    module.upgrade(conn)
                    conn.execute(
                        "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                        (version, name)
                    )
                    conn.commit()
                except Exception as e:
                    conn.rollback()
                    logger.error(f"[Migrations] {name} failed: {e}")
                    raise
                applied += 1
        finally:
            conn.close()
        return applied

    def get_status(self) -> dict:
        """Current schema version and any migrations not yet applied."""
        conn = self._get_conn()
        try:
            self._ensure_migrations_table(conn)
            current = self._get_current_version(conn)
            migrations = self._get_migration_modules()
            pending = [name for version, name in migrations if version > current]
            return {
                'current_version': current,
                'total_migrations': len(migrations),
                'pending_count': len(pending),
                'pending': pending
            }
        finally:
            conn.close()
