"""
Maintenance sweep for access tokens close to expiry.
Rotates every active token expiring within --days; with --warn, families are
emailed an expiry warning instead (tokens with under 24 hours left are still
rotated and the warning carries the new link). --dry-run changes no tokens.
Safe to re-run.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.config import logger, TOKEN_ROTATION_THRESHOLD_DAYS
from utils.access_tokens import AccessTokenService
from utils.distribution import DistributionService
from utils.token_store import SqlTokenStore
from utils.tokens import mask_token


def run(days: int, warn: bool = False, dry_run: bool = True, method: str = "email") -> dict:
    store = SqlTokenStore()
    tokens = AccessTokenService(store)

    logger.info("=" * 60)
    logger.info(f"Expiring token sweep (days={days}, warn={warn}, dry_run={dry_run})")
    logger.info("=" * 60)

    if dry_run and not warn:
        expiring = tokens.get_expiring_tokens(days)
        for t in expiring["tokens"]:
            logger.info(f"  would rotate {mask_token(t.token)} kind={t.kind} expires_at={t.expires_at.isoformat()}")
        logger.info(f"{expiring['total_count']} tokens would be rotated: {expiring['by_kind']}")
        return {"rotated": 0, "candidates": expiring["total_count"]}

    if warn:
        result = DistributionService(store, tokens).send_expiry_warnings(days, method=method, dry_run=dry_run)
        logger.info(f"Warnings sent: {result['warnings_sent']}, rotated: {result['tokens_rotated']}, "
                    f"would rotate: {result['would_rotate']}, errors: {len(result['errors'])}")
        return result

    result = tokens.rotate_expiring_tokens(days)
    for err in result["errors"]:
        logger.error(f"  {err['token_id']}: {err['error']}")
    logger.info(f"Rotated: {result['rotated']}, failed: {result['failed']}")
    return {"rotated": result["rotated"], "failed": result["failed"]}


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Rotate or warn about access tokens nearing expiry')
    parser.add_argument('--days', type=int, default=TOKEN_ROTATION_THRESHOLD_DAYS, help='Expiry window in days')
    parser.add_argument('--warn', action='store_true', help='Send expiry warnings instead of rotating everything')
    parser.add_argument('--method', type=str, default='email', choices=['email', 'sms', 'whatsapp'])
    parser.add_argument('--dry-run', action='store_true', help='Only report what would happen')
    args = parser.parse_args()

    out = run(args.days, warn=args.warn, dry_run=args.dry_run, method=args.method)
    sys.exit(1 if out.get("failed") else 0)
