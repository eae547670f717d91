#!/usr/bin/env python3
"""
Monthly Token Allocation

Resets every user's monthly tokens: free_token for users without an active
subscription, subscription_token for subscribers. Meant for a monthly cron.
"""

import argparse
import asyncio
import sys

from sqlalchemy.exc import SQLAlchemyError

from tokenledger.config import settings
from tokenledger.db.migration_runner import run_migrations
from tokenledger.db.session import close_engines, get_write_session
from tokenledger.observability import get_logger, setup_logging
from tokenledger.services.ledger import TokenLedgerService

logger = get_logger(__name__)


async def allocate(amount: int) -> int:
    """Run one allocation and return how many users were updated."""
    try:
        async with get_write_session() as session:
            result = await TokenLedgerService(session).allocate_monthly_tokens(amount)
    finally:
        await close_engines()
    return result.users_updated


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reset monthly free and subscription tokens for every user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Default allocation (MONTHLY_TOKEN_ALLOCATION)
  python3 scripts/add_monthly_tokens.py

  # Custom amount, applying pending migrations first
  python3 scripts/add_monthly_tokens.py --amount 20000 --migrate
        """,
    )
    parser.add_argument(
        "--amount",
        type=int,
        default=settings.monthly_token_allocation,
        help=f"Tokens per user (default: {settings.monthly_token_allocation})",
    )
    parser.add_argument(
        "--migrate", action="store_true", help="Apply pending migrations before allocating"
    )

    args = parser.parse_args()
    setup_logging()

    if args.amount < 0:
        logger.error("invalid_amount", amount=args.amount)
        sys.exit(1)

    if args.migrate:
        run_migrations()

    try:
        users_updated = asyncio.run(allocate(args.amount))
    except SQLAlchemyError as exc:
        logger.error("monthly_allocation_script_failed", error=str(exc))
        sys.exit(1)

    logger.info("monthly_allocation_script_complete", users_updated=users_updated)
    print(f"Monthly tokens allocated successfully! Updated {users_updated} users.")


if __name__ == "__main__":
    main()
