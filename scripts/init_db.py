from __future__ import annotations

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from rafflehub.config import Settings
from rafflehub.db.engine import make_engine


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to the requested revision."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def print_tables() -> None:
    """Inspect the configured database and print all table names."""
    engine = make_engine(Settings.from_env().database_url)
    insp = inspect(engine)
    print("Current tables:", ", ".join(sorted(insp.get_table_names())))
    engine.dispose()


def main(argv: list[str]) -> None:
    """Apply migrations (``head`` unless a revision is given) and report the schema."""
    upgrade_db(argv[1] if len(argv) > 1 else "head")
    print_tables()


if __name__ == "__main__":
    main(sys.argv)
