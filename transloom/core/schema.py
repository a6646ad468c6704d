"""
Database Schema Management Module

This module handles database initialization, schema validation, and migrations.
For job and segment operations, see core/store.py
"""

import sqlite3

from transloom.logger import get_logger

logger = get_logger(__name__)

DB_VERSION = 1  # Increment when schema changes


def get_db_version(conn: sqlite3.Connection) -> int:
    """Get current database version."""
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT version FROM db_version LIMIT 1")
        row = cursor.fetchone()
        return row[0] if row else 0
    except sqlite3.OperationalError:
        return 0


def set_db_version(conn: sqlite3.Connection, version: int):
    """Set database version."""
    cursor = conn.cursor()
    cursor.execute("CREATE TABLE IF NOT EXISTS db_version (version INTEGER)")
    cursor.execute("DELETE FROM db_version")
    cursor.execute("INSERT INTO db_version (version) VALUES (?)", (version,))


def create_tables(conn: sqlite3.Connection):
    """Create all tables that do not exist yet."""
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        source_lang TEXT NOT NULL,
        target_lang TEXT NOT NULL,
        created_at TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'created',
        source_path TEXT,
        output_path TEXT,
        source_format TEXT,
        target_format TEXT,
        model TEXT,
        last_error TEXT,
        updated_at TEXT
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS segments (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        ordinal INTEGER NOT NULL,
        source_text TEXT NOT NULL,
        translated_text TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL,
        claimed_by TEXT,
        UNIQUE (job_id, ordinal),
        FOREIGN KEY (job_id) REFERENCES jobs (id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS translation_memory (
        source_hash TEXT NOT NULL,
        source_lang TEXT NOT NULL,
        target_lang TEXT NOT NULL,
        source_text TEXT NOT NULL,
        translated_text TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (source_hash, source_lang, target_lang)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS app_config (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)


def ensure_database_indexes(conn: sqlite3.Connection):
    """Ensure all performance-critical indexes exist."""
    cursor = conn.cursor()

    # Claim query: pending/stale rows of one job in ordinal order
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_segments_job_status
        ON segments(job_id, status, ordinal)
    """)

    # Stale in-flight recovery across all jobs
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_segments_status_updated
        ON segments(status, updated_at)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_jobs_state
        ON jobs(state)
    """)


def initialize_database(conn: sqlite3.Connection):
    """Create tables on a new database, migrate an existing one."""
    current_version = get_db_version(conn)
    create_tables(conn)

    if current_version == 0:
        ensure_database_indexes(conn)
        set_db_version(conn, DB_VERSION)
        logger.debug("Database initialized at version %s", DB_VERSION)
    elif current_version < DB_VERSION:
        migrate_database(conn, current_version, DB_VERSION)
    conn.commit()


# ============================================================
# Database Migration
# ============================================================

def migrate_database(conn: sqlite3.Connection, from_version: int, to_version: int):
    """
    Migrate database from one version to another.

    create_tables() has already added new tables; column changes to existing
    tables go here, keyed on from_version.
    """
    logger.info(f"Migrating database from version {from_version} to {to_version}")
    ensure_database_indexes(conn)
    set_db_version(conn, to_version)
    logger.info(f"Database migration completed: now at version {to_version}")
