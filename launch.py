#!/usr/bin/env python3
"""Mesh Optimizer launcher.

Starts gunicorn serving the proxy and waits until it answers its health check.
"""

import os
import signal
import subprocess
import sys
import time

import requests

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
PORT = int(os.getenv("PORT", "8787"))
HEALTH_URL = f"http://127.0.0.1:{PORT}/health"
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[mesh-optimizer] {msg}", flush=True)


def port_in_use(port: int) -> bool:
    """Check if a port is already in use."""
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def wait_for_server(timeout: int = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            requests.get(HEALTH_URL, timeout=1)
            return True
        except requests.RequestException:
            pass
        # Check if gunicorn died
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    # ── Preflight checks ─────────────────────────────────────
    if not os.getenv("RAPIDPIPELINE_TOKEN"):
        from dotenv import load_dotenv

        load_dotenv(os.path.join(PROJECT_DIR, ".env"))
    if not os.getenv("RAPIDPIPELINE_TOKEN"):
        log("RAPIDPIPELINE_TOKEN is not set. Add it to .env or the environment.")
        sys.exit(1)

    if port_in_use(PORT):
        log(f"Port {PORT} is already in use.")
        sys.exit(1)

    # ── Register signal handlers ─────────────────────────────
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # ── Start gunicorn ───────────────────────────────────────
    log(f"Starting proxy (gunicorn on port {PORT})...")

    gunicorn_proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "gunicorn",
            "--bind",
            f"127.0.0.1:{PORT}",
            "--workers",
            "4",
            "--timeout",
            "300",
            "--pid",
            PID_FILE,
            "--access-logfile",
            "-",
            "--error-logfile",
            "-",
            "app:create_app()",
        ],
        cwd=PROJECT_DIR,
    )

    # ── Wait for server ──────────────────────────────────────
    log("Waiting for server...")
    if not wait_for_server():
        log("Server did not start. Check output above.")
        sys.exit(1)

    log(f"Proxy is running at: http://127.0.0.1:{PORT}")
    log("Press Ctrl+C to stop the server.")

    # ── Block until gunicorn exits ───────────────────────────
    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
