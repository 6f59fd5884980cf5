#!/usr/bin/env python3
"""
Protocol Scheduling Engine Main Entry Point

Starts the background sync worker with an embedded health endpoint.

Usage:
    python main.py worker      # RQ worker for assignment / resync jobs
    python main.py scheduler   # Periodic recheck of active assignments
    python main.py both        # Worker plus recheck scheduler
"""
import sys
import json
import time
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional
from dotenv import load_dotenv

from config.settings import HEALTH_PORT, LOG_FORMAT, LOG_LEVEL

logger = logging.getLogger("protocol-main")

MODES = ["worker", "scheduler", "both"]


class SimpleHealthHandler(BaseHTTPRequestHandler):
    """Minimal handler for container health checks."""

    def do_GET(self):  # noqa: N802 (http.server API)
        if self.path == "/health":
            from config.redis import check_redis_connection

            redis_ok = check_redis_connection()
            self.send_response(200 if redis_ok else 503)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            payload = {
                "status": "healthy" if redis_ok else "degraded",
                "service": "protocol-scheduler",
                "redis": "ok" if redis_ok else "unreachable",
                "timestamp": int(time.time()),
            }
            self.wfile.write(json.dumps(payload).encode())
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):  # noqa: A003 (shadow builtins)
        # Route default server logging to our logger at DEBUG
        logger.debug(format, *args)


class BackgroundHTTPServer:
    """Run a simple HTTPServer in a background thread."""

    def __init__(self, port: int = HEALTH_PORT):
        self._port = port
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self):
        if self._running:
            return

        self._server = HTTPServer(("0.0.0.0", self._port), SimpleHealthHandler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        self._running = True
        logger.info(f"Health endpoint listening on 0.0.0.0:{self._port} at /health")

    def stop(self):
        try:
            if self._server:
                logger.info("Stopping health server")
                self._server.shutdown()
                self._server.server_close()
        finally:
            self._running = False
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=1.0)


health_server = BackgroundHTTPServer(port=HEALTH_PORT)


def _run_mode(mode: str):
    """Invoke the worker module's main() for the selected mode."""
    original_argv = sys.argv.copy()

    try:
        sys.argv = [sys.argv[0], mode]

        from scheduling.worker import main as worker_main
        worker_main()
    finally:
        sys.argv = original_argv


def main():
    """Main entry point router with embedded health endpoint."""
    load_dotenv()
    logging.basicConfig(level=LOG_LEVEL.upper(), format=LOG_FORMAT)

    if len(sys.argv) < 2:
        print("Usage: python main.py <mode>")
        print(f"Modes: {', '.join(MODES)}")
        sys.exit(1)

    mode = sys.argv[1].lower()
    if mode not in MODES:
        print(f"Unknown mode: {mode}")
        print(f"Available modes: {', '.join(MODES)}")
        sys.exit(1)

    try:
        health_server.start()
    except OSError as exc:
        logger.error(f"Failed to start health endpoint on port {HEALTH_PORT}: {exc}")
        raise

    try:
        _run_mode(mode)
    finally:
        health_server.stop()


if __name__ == "__main__":
    main()
