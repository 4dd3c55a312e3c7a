"""
One-time script to create the first studio admin.
Run from the project root:

    python scripts/create_admin.py

You will be prompted for email, password, and full name.
"""

import os
import sys

# Make sure the project root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import init_db, SessionLocal  # noqa: E402
from app.models.users import ROLES  # noqa: E402
from app.services.auth import create_user, get_user_by_email  # noqa: E402


def main():
    init_db()

    db = SessionLocal()
    try:
        print("\n── StudioSign · Create Staff User ──\n")

        email = input("Email: ").strip()
        if not email:
            print("Email cannot be empty.")
            return

        existing = get_user_by_email(db, email)
        if existing:
            print(f"User {email} already exists (role: {existing.role}).")
            return

        password = input("Password (min 8 chars): ").strip()
        if len(password) < 8:
            print("Password too short.")
            return

        full_name = input("Full name (optional): ").strip()

        role = input(f"Role [{' / '.join(ROLES)}] (default: studio_admin): ").strip()
        if role not in ROLES:
            role = "studio_admin"

        user = create_user(db, email, password, full_name, role)
        print(f"\n✓ User created: {user.email} (role: {user.role}, id: {user.id})\n")

    finally:
        db.close()


if __name__ == "__main__":
    main()
