#!/usr/bin/env python3
"""
Create an admin account.

    python -m src.tasks.create_admin admin@example.com --name "Jane Doe"

The password is read from the terminal.
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from ..database.session import SessionLocal
from ..database import crud
from ..auth_utils import hash_password
from ..logging_config import setup_logging


logger = logging.getLogger(__name__)


def main(argv=None):
    """Create an admin user."""
    parser = argparse.ArgumentParser(description="Create an admin account")
    parser.add_argument("email")
    parser.add_argument("--name", default=None, help="full name")
    args = parser.parse_args(argv)

    setup_logging()
    password = getpass.getpass("Password: ")
    if len(password) < 8:
        logger.error("Password must be at least 8 characters")
        return 1

    db = SessionLocal()
    try:
        if crud.get_user_by_email(db, args.email):
            logger.error("A user with email %s already exists", args.email)
            return 1

        user = crud.create_user(
            db,
            email=args.email,
            password_hash=hash_password(password),
            full_name=args.name,
            is_admin=True
        )
        logger.info("Created admin %s (%s)", user.email, user.id)
        return 0

    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create admin %s", args.email)
        return 1

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
