#!/usr/bin/env python3
"""
Admin User Seed Script
Creates an administrator for the warranty lifecycle admin endpoints
(status overrides, reinstatement).

Usage:
    python -m scripts.seed_admin <email> <username> <password> [mobile_number]

Example:
    python -m scripts.seed_admin admin@erps.example admin securepassword123
"""
import sys
import os
from uuid import uuid4

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from warranty_lifecycle.database import SessionLocal, init_db
from warranty_lifecycle.models.db_models import UserDB, UserRole
from warranty_lifecycle.auth import hash_password


def create_admin_user(email: str, username: str, password: str, mobile_number: str = None) -> bool:
    """Create an admin user in the database."""
    # Ensure tables exist
    init_db()

    db: Session = SessionLocal()
    try:
        existing = db.query(UserDB).filter(
            (UserDB.email == email) | (UserDB.username == username)
        ).first()

        if existing:
            if existing.email != email:
                print(f"Error: Username '{username}' already exists.")
                return False
            if existing.is_admin:
                print(f"User '{email}' is already an admin.")
                return False
            # Upgrade existing user to admin
            existing.role = UserRole.ADMIN.value
            db.commit()
            print(f"Upgraded existing user '{email}' to admin role.")
            return True

        admin_user = UserDB(
            id=str(uuid4()),
            email=email,
            username=username,
            password_hash=hash_password(password),
            mobile_number=mobile_number,
            role=UserRole.ADMIN.value,
        )

        db.add(admin_user)
        db.commit()

        print("Admin user created successfully!")
        print(f"  Email: {email}")
        print(f"  Username: {username}")
        print(f"  Role: {UserRole.ADMIN.value}")
        return True

    except Exception as e:
        print(f"Error creating admin user: {e}")
        db.rollback()
        return False
    finally:
        db.close()


def main():
    if len(sys.argv) not in (4, 5):
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1]
    username = sys.argv[2]
    password = sys.argv[3]
    mobile_number = sys.argv[4] if len(sys.argv) == 5 else None

    # Basic validation
    if len(password) < 8:
        print("Error: Password must be at least 8 characters.")
        sys.exit(1)

    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    success = create_admin_user(email, username, password, mobile_number)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
