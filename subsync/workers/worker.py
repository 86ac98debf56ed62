"""
Celery entrypoint:

    celery -A subsync.workers.worker worker -B --loglevel=INFO
"""

import os

from dotenv import load_dotenv

from subsync import create_app
from subsync.logging_config import configure_logging_for_worker

load_dotenv()
os.environ.setdefault("FLASK_CONFIG", "production")

app = create_app(os.getenv("FLASK_CONFIG"))
configure_logging_for_worker()
celery = app.extensions["celery"]
