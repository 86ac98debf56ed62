"""Management script: flask CLI with the reconciliation commands registered.

    python manage.py init-db
    python manage.py replay-dead-letters --limit 50
    python manage.py purge-ledger --days 90
    python manage.py sweep-tiers
"""

import os

from dotenv import load_dotenv
from flask.cli import FlaskGroup

from subsync import create_app

load_dotenv()


def _create_app():
    return create_app(os.getenv("FLASK_CONFIG", "development"))


cli = FlaskGroup(create_app=_create_app)


if __name__ == "__main__":
    cli()
