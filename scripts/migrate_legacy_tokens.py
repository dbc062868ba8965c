"""
Copy tokens from the legacy schema (subject_tokens, folders.share_token) into
access_tokens. Values are kept so printed cards and sent links keep working.
Run repeatedly until the legacy columns can be dropped; already-migrated
values are skipped.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.config import logger
from utils.token_store import LegacyTokenAdapter, SqlTokenStore, migrate_legacy_tokens


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Migrate legacy gallery tokens into access_tokens')
    parser.add_argument('--dry-run', action='store_true', help='Only count legacy tokens')
    args = parser.parse_args()

    legacy = LegacyTokenAdapter()
    if args.dry_run:
        views = legacy.iter_all()
        by_source = {}
        for v in views:
            by_source[v.source] = by_source.get(v.source, 0) + 1
        logger.info(f"Legacy tokens found: {len(views)} {by_source}")
        sys.exit(0)

    result = migrate_legacy_tokens(SqlTokenStore(), legacy)
    logger.info(f"Migrated: {result['migrated']}, skipped: {result['skipped']}")
