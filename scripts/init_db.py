#!/usr/bin/env python3
"""
Initialize the StudioSign database.
Creates all tables and installs SQLite triggers (if using SQLite).
"""

import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings  # noqa: E402
from app.database import init_db  # noqa: E402


def main():
    print("Initializing database...")
    print(f"  DATABASE_URL: {settings.DATABASE_URL[:40]}...")
    print(f"  Environment: {settings.ENVIRONMENT}")

    init_db()

    print("Database initialized successfully.")
    if settings.is_sqlite:
        print("SQLite triggers installed (append-only envelope audit log).")


if __name__ == "__main__":
    main()
