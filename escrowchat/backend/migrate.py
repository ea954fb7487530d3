"""Apply SQL schema for local PostgreSQL setup."""

from __future__ import annotations

from pathlib import Path

import structlog

from escrowchat.backend.config import load_settings
from escrowchat.backend.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json)
    if not settings.database_url:
        raise RuntimeError("ESCROWCHAT_DATABASE_URL is required for migration")

    import psycopg

    schema_path = Path(__file__).with_name("db_schema.sql")
    schema_sql = schema_path.read_text(encoding="utf-8")

    with psycopg.connect(settings.database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()
    logger.info("schema_applied", schema=str(schema_path))


if __name__ == "__main__":
    main()
