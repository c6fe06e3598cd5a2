"""
Create or upgrade the database schema without starting the web server.

Usage:
  python migrate.py            # upgrade to the latest revision
  python migrate.py --sql      # print the SQL instead of running it

Revisions live in migrations/versions and are applied with Alembic.
"""

import os
import sys
import traceback

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def alembic_config(database_url=None):
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    if database_url:
        # ConfigParser interpolation treats % specially.
        cfg.set_main_option('sqlalchemy.url', database_url.replace('%', '%%'))
    return cfg


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    load_dotenv()
    database_url = (os.getenv('DATABASE_URL') or '').strip()
    if not database_url:
        print("✗ DATABASE_URL not found. Set it in .env", file=sys.stderr)
        return 1

    offline = '--sql' in argv
    try:
        if not offline:
            print("Applying database migrations...")
        command.upgrade(alembic_config(database_url), 'head', sql=offline)
        if not offline:
            print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
