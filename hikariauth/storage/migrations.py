from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

from hikariauth.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Ordered; names are recorded in the ``migrations`` table once applied.
MIGRATIONS: List[Tuple[str, Path]] = [
    ("initial_schema", SCHEMA_PATH),
]


async def run_migrations(store) -> List[str]:
    """Apply every migration ``store`` has not recorded yet.

    Returns the names applied by this call, in order.
    """
    already = set(await store.applied_migration_names())
    applied: List[str] = []
    for name, path in MIGRATIONS:
        if name in already:
            continue
        sql = path.read_text(encoding="utf-8")
        if await store.apply_migration(name, sql):
            applied.append(name)
    logger.info("migrations_complete", applied=applied, skipped=sorted(already))
    return applied
