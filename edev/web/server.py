"""
Web server runner (uvicorn in background thread).
"""

import threading
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger


class WebServer:
    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._port = int(port)
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[uvicorn.Server] = None

    def start(self) -> None:
        cfg = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level="info",
            access_log=False,
            timeout_keep_alive=60,
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(cfg)

        def _run() -> None:
            try:
                self._server.run()
            except Exception as e:
                logger.error("Web server crashed: {}", e)

        self._thread = threading.Thread(target=_run, name="web", daemon=True)
        self._thread.start()
        logger.info("Serving on {}:{}", self._host, self._port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.info("Server stopped.")
