"""Flask application factory."""
from __future__ import annotations

import atexit
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Optional

from flask import Flask
from flask_cors import CORS
from sqlalchemy import create_engine

from inbox_mirror.api.routes.chats import chats_bp
from inbox_mirror.api.routes.core import core_bp
from inbox_mirror.api.routes.crawl import crawl_bp
from inbox_mirror.config import (
    get_browser_settings,
    get_crawl_settings,
    get_inbox_db_path,
    get_source_credentials,
)
from inbox_mirror.crawl.browser import BrowserSession
from inbox_mirror.crawl.extractor import Extractor
from inbox_mirror.crawl.job_tracker import CrawlJobTracker
from inbox_mirror.crawl.pipeline import CrawlPipeline
from inbox_mirror.crawl.session import SeleniumSessionProbe, SessionManager
from inbox_mirror.data.inbox_store import InboxStore, get_inbox_store

logger = logging.getLogger(__name__)


def create_app(
    config_overrides: Optional[dict] = None,
    *,
    extractor: Optional[Extractor] = None,
    pipeline: Optional[CrawlPipeline] = None,
    store: Optional[InboxStore] = None,
) -> Flask:
    """Initialize and configure the Flask application.

    The app owns the shared browser session. Pass ``pipeline`` (tests) or an
    ``extractor`` to enable crawl endpoints; without either they answer 503
    while the read-only chat endpoints keep working.
    """
    app = Flask(__name__)
    CORS(app)

    # 1. Configuration
    app.config["STARTUP_TIME"] = time.time()
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(
        Path(app.config.get("LOG_DIR", "logs")),
        app.config.get("API_LOG_LEVEL") or os.getenv("API_LOG_LEVEL", "INFO"),
    )

    # 2. Initialize Services (State Injection)
    if store is None:
        store = open_store(app)
    app.config["INBOX_STORE"] = store

    if pipeline is None and extractor is not None:
        pipeline = build_pipeline(store, extractor)
    if pipeline is not None:
        app.config["CRAWL_PIPELINE"] = pipeline
        app.config["JOB_TRACKER"] = pipeline.tracker
    else:
        settings = get_crawl_settings()
        app.config["CRAWL_PIPELINE"] = None
        app.config["JOB_TRACKER"] = CrawlJobTracker(
            stale_after_seconds=settings.status_stale_seconds,
            abandon_after_seconds=settings.abandon_after_seconds,
        )
        logger.warning("No extractor configured; crawl endpoints are disabled")

    # 3. Register Blueprints
    app.register_blueprint(core_bp)
    app.register_blueprint(chats_bp)
    app.register_blueprint(crawl_bp)

    logger.info("Inbox mirror API initialized")
    return app


def open_store(app: Flask) -> InboxStore:
    """Open the SQLite store named by ``INBOX_DB_PATH`` (app config, then environment)."""
    raw_path = app.config.get("INBOX_DB_PATH")
    db_path = Path(raw_path) if raw_path else get_inbox_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")
    return get_inbox_store(engine)


def build_pipeline(store: InboxStore, extractor: Extractor) -> CrawlPipeline:
    """Wire the single shared session and job tracker around ``extractor``.

    The browser is closed at interpreter exit even if a job is still wedged.
    """
    crawl_settings = get_crawl_settings()
    browser = BrowserSession(get_browser_settings())
    try:
        credentials = get_source_credentials()
    except RuntimeError as exc:
        logger.warning("%s; relying on saved cookies only", exc)
        credentials = None

    session = SessionManager(browser, SeleniumSessionProbe(browser), credentials)
    atexit.register(session.close)
    tracker = CrawlJobTracker(
        stale_after_seconds=crawl_settings.status_stale_seconds,
        abandon_after_seconds=crawl_settings.abandon_after_seconds,
    )
    return CrawlPipeline(store=store, tracker=tracker, session=session, extractor=extractor)


def _configure_logging(log_dir: Path, level_name: str) -> None:
    """Attach one rotating api.log handler to the root logger per log directory."""
    log_level = getattr(logging, str(level_name).upper(), logging.INFO)
    log_path = (log_dir / "api.log").resolve()

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers:
        if getattr(handler, "baseFilename", None) == str(log_path):
            handler.setLevel(log_level)
            return

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=5 * 1024 * 1024, backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s")
    )
    root.addHandler(file_handler)


if __name__ == "__main__":
    # Dev server entry point
    app = create_app()
    port = int(os.getenv("PORT", 8000))
    app.run(host="0.0.0.0", port=port, debug=True)
