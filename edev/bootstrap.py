"""
Application bootstrap: config, logging, db, sessions, oauth, web server, workers.
"""

from dataclasses import dataclass
import time
from typing import Any, Dict

from loguru import logger

from edev.config.settings import Settings, load_settings, validate_settings
from edev.db.sqlite import SQLite
from edev.logging.setup import setup_logging
from edev.oauth.providers import build_providers
from edev.oauth.state import StateStore
from edev.session.store import SessionStore
from edev.web.app import create_app
from edev.web.server import WebServer
from edev.workers.cleanup_worker import CleanupWorker


@dataclass
class Runner:
    settings: Settings
    storage: SQLite
    web: WebServer
    cleanup: CleanupWorker

    def start(self) -> None:
        self.web.start()
        self.cleanup.start()

    def run_forever(self) -> None:
        self.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Shutting down gracefully...")
        finally:
            try:
                self.cleanup.stop()
            finally:
                try:
                    self.web.stop()
                finally:
                    self.storage.close()
                    logger.info("Service stopped")


def build_app() -> Dict[str, Any]:
    settings = load_settings()
    setup_logging(settings)
    validate_settings(settings)

    storage = SQLite.open(settings.database_url)

    sessions = SessionStore(settings.session_max_age_seconds, insecure_cookie=settings.fake_oauth_enabled)
    states = StateStore()
    providers = build_providers(settings)

    app = create_app(settings, storage, sessions=sessions, states=states, providers=providers)
    host, port = settings.listen_host_port()
    web = WebServer(app, host, port)
    cleanup = CleanupWorker(sessions, states, settings.session_cleanup_interval_seconds)

    runner = Runner(settings=settings, storage=storage, web=web, cleanup=cleanup)

    return {
        "settings": settings,
        "storage": storage,
        "sessions": sessions,
        "states": states,
        "providers": providers,
        "app": app,
        "web": web,
        "cleanup": cleanup,
        "runner": runner,
    }
