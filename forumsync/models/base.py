"""Database base configuration"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from forumsync.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _existing_tables(conn) -> set:
    if conn.dialect.name == "sqlite":
        return {
            row[0]
            for row in conn.exec_driver_sql(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
    from sqlalchemy import inspect

    return set(inspect(conn).get_table_names())


def _ensure_unique_indexes(bind=None):
    """
    Best-effort schema hardening for databases created by older releases.

    The dedup guarantees rely on these uniqueness rules, so make sure they
    exist even when the table predates the model's constraints. Indexes are
    only ever added, never dropped.
    """
    bind = bind or engine
    with bind.begin() as conn:
        tables = _existing_tables(conn)

        stmts = []
        if "sync_mappings" in tables:
            stmts += [
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_mappings_discord_thread_id "
                "ON sync_mappings(discord_thread_id)",
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_mappings_linear_issue_id "
                "ON sync_mappings(linear_issue_id)",
            ]
        if "synced_comments" in tables:
            stmts.append(
                "CREATE INDEX IF NOT EXISTS ix_synced_comments_linear_issue_id "
                "ON synced_comments(linear_issue_id)"
            )
        for sql in stmts:
            try:
                conn.exec_driver_sql(sql)
            except Exception:
                # Some dialects may not support IF NOT EXISTS; try without it.
                try:
                    conn.exec_driver_sql(sql.replace(" IF NOT EXISTS", ""))
                except Exception:
                    # Best-effort only; do not block app startup.
                    pass


def init_db(bind=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import forumsync.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=bind or engine)
    _ensure_unique_indexes(bind)
