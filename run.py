#!/usr/bin/env python3
"""
Standalone script that watches one user's conversation list against Firestore.
Rows are logged every time the list changes.
"""

import argparse
import asyncio
import logging
import os
import sys

# Add the current directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chatsync.core.config import settings
from chatsync.database import create_local_engine, create_session_factory, init_db
from chatsync.services.firebase_service import FirestoreDocumentStore
from chatsync.services.local_storage_service import LocalStorage
from chatsync.services.session_service import SyncSession


def parse_args():
    parser = argparse.ArgumentParser(description="Watch a user's conversation list")
    parser.add_argument("uid", help="User id to watch")
    parser.add_argument("--query", default="", help="Only log rows matching this search text")
    parser.add_argument("--tab", default="all", choices=["all", "unread", "favorites"])
    return parser.parse_args()


async def watch(args):
    logger = logging.getLogger(__name__)

    engine = create_local_engine(settings.LOCAL_STORE_URL)
    init_db(engine)
    local = LocalStorage(create_session_factory(engine))
    session = SyncSession(FirestoreDocumentStore(), local)
    await session.start()

    def _log_rows(view):
        if view.loading:
            return
        rows = view.filtered_rows(args.query, args.tab)
        logger.info(f"{len(rows)} conversations")
        for row in rows:
            marker = "*" if view.unread_count(row.id) else " "
            title = view.title(row) or row.counterpart_id
            logger.info(f" {marker} {title:<24} {view.subtitle(row)[:60]}")

    session.conversations.observe(_log_rows)
    session.set_identity(args.uid)
    try:
        await asyncio.Event().wait()
    finally:
        await session.close()


def main():
    """Main entry point for the watcher."""

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    logger = logging.getLogger(__name__)
    args = parse_args()

    logger.info("Starting conversation list watcher")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Firebase Project: {settings.FIREBASE_PROJECT_ID}")
    logger.info(f"User: {args.uid}")

    try:
        asyncio.run(watch(args))
    except KeyboardInterrupt:
        logger.info("Watcher stopped by user")
    except Exception as e:
        logger.error(f"Watcher failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
