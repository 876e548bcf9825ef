"""
Cleanup worker: drops expired sessions and pending OAuth states.
"""

import threading

from loguru import logger

from edev.oauth.state import StateStore
from edev.session.store import SessionStore


class CleanupWorker:
    def __init__(self, sessions: SessionStore, states: StateStore, interval_seconds: int) -> None:
        self._sessions = sessions
        self._states = states
        self._interval = max(1, int(interval_seconds))
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="cleanup", daemon=True)

    def start(self) -> None:
        self._thread.start()
        logger.info("Cleanup worker started (interval={}s)", self._interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=10)
        logger.info("Cleanup worker stopped")

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.tick()
            except Exception as e:
                logger.error("Cleanup tick failed: {}", e)

    def tick(self) -> None:
        expired = self._sessions.cleanup()
        if expired:
            logger.info("Expired sessions deleted: {}", expired)
        stale = self._states.cleanup()
        if stale:
            logger.debug("Expired OAuth states deleted: {}", stale)
