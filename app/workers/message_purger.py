"""
Message Purge Worker.

Permanently deletes messages whose expiry has passed (``expires_at <= now``),
whether or not they were soft-deleted. Read receipts go with them and chat
last-message pointers to them are cleared, in the same transaction.

Runs as a background loop inside the API process and can be run once from
the command line (e.g. from cron):

    python -m workers.message_purger --batch-size 500
"""
import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import Callable, Optional
from sqlalchemy.orm import Session
from db.database import SessionLocal
from db.repository import Repository
from workers.metrics import (
    MESSAGES_PURGED_TOTAL,
    READ_RECEIPTS_PURGED_TOTAL,
    PURGE_RUNS_TOTAL,
    PURGE_DURATION_SECONDS
)

logger = logging.getLogger(__name__)


class MessagePurger:
    """Deletes expired messages in batches."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, batch_size: int = 1000):
        """
        Args:
            session_factory: Callable returning a new database session
            batch_size: Maximum messages deleted per transaction
        """
        self.session_factory = session_factory
        self.batch_size = batch_size

    def purge_batch(self, db: Session, now: datetime) -> dict:
        """
        Delete one batch of expired messages and commit.

        Returns:
            Counts of deleted messages, receipts and cleared chat pointers
        """
        repo = Repository(db)
        message_ids = repo.get_expired_message_ids(now, limit=self.batch_size)
        if not message_ids:
            return {"messages": 0, "receipts": 0, "chats": 0}

        try:
            deleted = repo.delete_messages(message_ids)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return deleted

    def run_purge(self, now: Optional[datetime] = None) -> dict:
        """
        Purge every message expired at ``now`` (default: current time).

        Returns:
            Purge statistics (purged, receipts, chats_updated, batches)
        """
        start_time = time.time()
        now = now or datetime.utcnow()
        stats = {
            'purged': 0,
            'receipts': 0,
            'chats_updated': 0,
            'batches': 0
        }

        db: Session = self.session_factory()
        try:
            while True:
                deleted = self.purge_batch(db, now)
                if deleted["messages"] == 0:
                    break
                stats['batches'] += 1
                stats['purged'] += deleted["messages"]
                stats['receipts'] += deleted["receipts"]
                stats['chats_updated'] += deleted["chats"]
                if deleted["messages"] < self.batch_size:
                    break

            MESSAGES_PURGED_TOTAL.inc(stats['purged'])
            READ_RECEIPTS_PURGED_TOTAL.inc(stats['receipts'])
            PURGE_RUNS_TOTAL.labels(status="success").inc()

            duration = time.time() - start_time
            PURGE_DURATION_SECONDS.observe(duration)

            if stats['purged']:
                logger.info(
                    f"Purge completed in {duration:.2f}s: {stats['purged']} messages, "
                    f"{stats['receipts']} receipts, {stats['chats_updated']} chat pointers cleared"
                )
            else:
                logger.debug("Purge found no expired messages")

            return stats

        except Exception as e:
            PURGE_RUNS_TOTAL.labels(status="failed").inc()
            logger.error(f"Message purge failed: {e}", exc_info=True)
            raise
        finally:
            db.close()


async def purge_loop(interval_seconds: int = 60, purger: Optional[MessagePurger] = None):
    """
    Background task running the purge every ``interval_seconds``.

    A failed run is logged and retried on the next tick.
    """
    purger = purger or MessagePurger()
    logger.info(f"Message purge loop started (interval={interval_seconds}s)")

    while True:
        try:
            await asyncio.to_thread(purger.run_purge)
        except Exception as e:
            logger.error(f"Error in purge loop: {e}")
        await asyncio.sleep(interval_seconds)


def main():
    """Entry point for a one-shot purge."""
    import argparse
    from core.config import settings
    from core.logging_config import configure_logging

    parser = argparse.ArgumentParser(description='Expired message purge')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=1000,
        help='Maximum messages deleted per transaction (default: 1000)'
    )
    args = parser.parse_args()

    configure_logging(service_name="securechat-purger", level=settings.log_level, enable_json=settings.log_json)

    try:
        stats = MessagePurger(batch_size=args.batch_size).run_purge()
    except Exception as e:
        logger.error(f"Purge failed: {e}")
        sys.exit(1)

    logger.info(
        f"Purge finished: {stats['purged']} messages, {stats['receipts']} receipts, "
        f"{stats['chats_updated']} chats updated"
    )
    sys.exit(0)


if __name__ == '__main__':
    main()
