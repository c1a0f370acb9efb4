#!/usr/bin/env python
"""
Apply TradeDesk schema migrations.

    python scripts/migrate.py                  # upgrade to head
    python scripts/migrate.py downgrade -1
    python scripts/migrate.py upgrade head --sql > upgrade.sql

The database comes from --database-url or the DATABASE_URL setting.
"""

import argparse
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from tradedesk.config import get_settings
from tradedesk.db.database import _normalize_url
from tradedesk.utils.logging import get_logger, setup_logging

ROOT = Path(__file__).resolve().parent.parent

logger = get_logger(__name__)


def _alembic_config(database_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", _normalize_url(database_url))
    return cfg


def _run(cfg: Config, args: argparse.Namespace) -> None:
    if args.command == "upgrade":
        command.upgrade(cfg, args.revision, sql=args.sql)
    elif args.command == "downgrade":
        command.downgrade(cfg, args.revision, sql=args.sql)
    elif args.command == "stamp":
        command.stamp(cfg, args.revision)
    elif args.command == "current":
        command.current(cfg, verbose=True)
    else:
        command.history(cfg)


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply TradeDesk schema migrations")
    parser.add_argument(
        "command",
        nargs="?",
        default="upgrade",
        choices=["upgrade", "downgrade", "stamp", "current", "history"],
    )
    parser.add_argument("revision", nargs="?", default="head")
    parser.add_argument("--database-url", "-d", help="Overrides the DATABASE_URL setting")
    parser.add_argument("--sql", action="store_true", help="Emit SQL instead of applying it")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.log_level)
    database_url = args.database_url or settings.database_url

    # Host part only; the URL may carry credentials
    logger.info("Running migration", command=args.command, revision=args.revision,
                database=database_url.rsplit("@", 1)[-1])
    try:
        _run(_alembic_config(database_url), args)
    except Exception as e:
        logger.error("Migration failed", command=args.command, error=str(e))
        return 1

    logger.info("Migration finished", command=args.command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
