#!/usr/bin/env python3
"""
Database setup script for the session store.

Creates the sessions table at the configured storage location and reports the
database health. Configuration comes from SESSIONS_* environment variables or
a .env file.
"""

import argparse
import logging
import sys

from sqlite_sessions.core.config import settings
from sqlite_sessions.core.exceptions import SessionStoreError
from sqlite_sessions.core.utils.database_helpers import check_database_health, get_database_info
from sqlite_sessions.core.utils.session_store import SessionStore

logger = logging.getLogger("sqlite_sessions.setup")


def main(argv=None) -> bool:
    """Initialize the sessions table based on configuration"""
    parser = argparse.ArgumentParser(description="Create the session store table")
    parser.add_argument(
        "--sweep",
        action="store_true",
        help="reclaim expired sessions once after setup",
    )
    args = parser.parse_args(argv)

    print("Session Store Database Setup")
    print("=" * 40)
    print(f"Storage location: {settings.storage_location}")

    try:
        options = settings.to_store_options()
        store = SessionStore.open(options, start_reclaimer=False)
    except SessionStoreError as e:
        print(f"Database initialization failed: {e}")
        return False

    with store:
        db_info = get_database_info(store.engine)
        print(f"Database Type: {db_info['type']}")
        if db_info["version"]:
            print(f"Database Version: {db_info['version']}")
        print(f"Stored sessions: {db_info['session_count']}")

        if args.sweep:
            reclaimed = store.sweep()
            print(f"Reclaimed expired sessions: {reclaimed}")

        health = check_database_health(store.engine)
        print(f"Health Status: {health['status']}")
        if health["status"] != "healthy":
            print(f"Warning: {health['last_error']}")
            return False

    print("Database initialized successfully")
    return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    success = main()
    sys.exit(0 if success else 1)
