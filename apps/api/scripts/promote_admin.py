#!/usr/bin/env python3
"""Give an existing user the admin role (idempotent).

Field management and customer deletion require an admin, so the first one has to
be promoted from the command line.

Usage:
  python scripts/promote_admin.py --username alice
"""

import argparse
import sys

from app.core.database import get_sessionmaker
from app.core.errors import NotFoundError
from app.identity.service import identity_service
from app.logging import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--username", required=True, help="Username to promote to admin")
    args = parser.parse_args()

    configure_logging()
    with get_sessionmaker()() as session:
        try:
            user = identity_service.promote_to_admin(session, args.username)
        except NotFoundError:
            print(f"User not found: {args.username}")
            sys.exit(1)
    print(f"Admin role attached to {user.username}")


if __name__ == "__main__":
    main()
