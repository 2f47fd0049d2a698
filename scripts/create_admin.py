"""Create an administrator account.

Usage: python scripts/create_admin.py <username> <password> [email]
"""

from __future__ import annotations

import sys

from sqlalchemy.exc import IntegrityError

from rafflehub.auth import create_admin
from rafflehub.config import Settings
from rafflehub.db.engine import get_sessionmaker, make_engine


def main(argv: list[str]) -> int:
    if len(argv) not in (3, 4):
        print(__doc__.strip())
        return 2

    username, password = argv[1], argv[2]
    email = argv[3] if len(argv) == 4 else None

    engine = make_engine(Settings.from_env().database_url)
    Session = get_sessionmaker(engine)
    try:
        with Session.begin() as session:
            admin = create_admin(session, username, password, email=email)
            print(f"Admin '{admin.username}' created (id={admin.id})")
    except IntegrityError:
        print(f"An admin with username '{username}' or that email already exists")
        return 1
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
