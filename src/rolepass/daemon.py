"""
RolePass daemon -- the always-on publisher.

Runs as a long-lived process: every poll interval it republishes the
guilds whose artifacts are stale, on a slower period it uploads a
registry backup, and it exposes a small local HTTP API for status
queries and for handing out the verification key.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional

from . import ROLEPASS_HOME
from .backup import backup_period_seconds
from .config import Settings
from .models import CycleOutcome
from .runtime import Runtime

logger = logging.getLogger("rolepass.daemon")

PID_FILE = "daemon.pid"


class DaemonState:
    """Thread-safe mutable daemon state.

    Stores counters from publish ticks and backups. All access is
    lock-protected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_tick: Optional[datetime] = None
        self.last_backup: Optional[datetime] = None
        self.ticks: int = 0
        self.published: int = 0
        self.upload_failures: int = 0
        self.backups_ok: int = 0
        self.backups_failed: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_tick": self.last_tick.isoformat() if self.last_tick else None,
                "last_backup": self.last_backup.isoformat() if self.last_backup else None,
                "ticks": self.ticks,
                "published": self.published,
                "upload_failures": self.upload_failures,
                "backups_ok": self.backups_ok,
                "backups_failed": self.backups_failed,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_tick(self, results: list) -> None:
        """Record the results of one publish pass."""
        with self._lock:
            self.last_tick = datetime.now(timezone.utc)
            self.ticks += 1
            for result in results:
                if result.outcome == CycleOutcome.UPLOAD_FAILED:
                    self.upload_failures += 1
                elif result.attempted:
                    self.published += 1

    def record_backup(self, ok: bool) -> None:
        with self._lock:
            self.last_backup = datetime.now(timezone.utc)
            if ok:
                self.backups_ok += 1
            else:
                self.backups_failed += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class DaemonService:
    """The publisher process.

    Args:
        settings: Loaded settings.
        runtime: Pre-built runtime (tests). Built from settings on start
            otherwise.
    """

    def __init__(self, settings: Settings, runtime: Optional[Runtime] = None):
        self.settings = settings
        self.runtime = runtime
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[HTTPServer] = None
        self._known_tenants: dict[str, str] = {}

    @property
    def log_file(self) -> Path:
        return self.settings.log_dir / "daemon.log"

    def start(self, install_signals: bool = True, serve_api: bool = True) -> None:
        """Start the daemon and all background workers.

        Raises:
            SigningKeyError: The signing key pair could not be loaded.
        """
        self._setup_logging()
        if self.runtime is None:
            self.runtime = Runtime(self.settings)
        self._write_pid()
        if install_signals:
            self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)
        general = self.settings.general
        logger.info(
            "Daemon starting: home=%s poll=%ds token_ttl=%ds refresh_limit=%d",
            self.settings.home,
            general.data_update_check_interval_sec,
            general.token_expire_period_sec,
            self.runtime.tracker.limit,
        )

        self._run_backup()

        workers = [
            ("publish", self._publish_loop),
            ("backup", self._backup_loop),
        ]
        for name, target in workers:
            t = threading.Thread(target=target, name=f"rolepass-{name}", daemon=True)
            t.start()
            self._threads.append(t)

        if serve_api:
            self._start_api_server()
        logger.info("Daemon started, PID %d", os.getpid())

    def stop(self) -> None:
        """Gracefully stop the daemon and all workers."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False

        if self.runtime is not None:
            self.runtime.backup_scheduler.shutdown()
        if self._server:
            self._server.shutdown()
            self._server.server_close()

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def tick(self) -> list:
        """One publish pass over the guilds the bot is currently in."""
        runtime = self.runtime
        runtime.watcher.poll(self._known_tenants)
        tenants = runtime.source.tenants()
        if tenants != self._known_tenants:
            joined = set(tenants) - set(self._known_tenants)
            left = set(self._known_tenants) - set(tenants)
            if joined or left:
                logger.info("Guilds changed: +%d -%d", len(joined), len(left))
            runtime.coordinator.track_tenants(tenants)
            runtime.watcher.prime(joined)
            self._known_tenants = dict(tenants)

        logger.debug("Publish pass over %d guild(s)", len(tenants))
        results = runtime.coordinator.publish_all(tenants)
        self.state.record_tick(results)
        return results

    def _publish_loop(self) -> None:
        """Republish stale guilds every poll interval."""
        interval = self.settings.general.data_update_check_interval_sec
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                logger.error("Publish pass error: %s", exc)
                self.state.record_error(f"Publish: {exc}")
            self._stop_event.wait(timeout=interval)

    def _backup_loop(self) -> None:
        """Trigger a backup every backup period."""
        backup = self.settings.backup
        period = backup_period_seconds(backup.period_unit, backup.period_value)
        while not self._stop_event.is_set():
            self._stop_event.wait(timeout=period)
            if self._stop_event.is_set():
                break
            self._run_backup()

    def _run_backup(self) -> None:
        try:
            ok = self.runtime.backup_scheduler.run()
        except Exception as exc:
            logger.error("Backup error: %s", exc)
            self.state.record_error(f"Backup: {exc}")
            ok = False
        self.state.record_backup(ok)

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        state = self.state
        runtime = self.runtime

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for daemon status API."""

            def do_GET(self):
                if self.path == "/status":
                    data = state.snapshot()
                    data["guilds"] = runtime.tracker.snapshot()
                    self._json_response(data)
                elif self.path == "/public-key":
                    self._text_response(runtime.signer.public_key_pem())
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response({"endpoints": ["/status", "/public-key", "/ping"]})

            def _json_response(self, data: dict, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(json.dumps(data, indent=2, default=str).encode())

            def _text_response(self, text: str, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.end_headers()
                self.wfile.write(text.encode("utf-8"))

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = HTTPServer(("127.0.0.1", self.settings.api_port), DaemonHandler)
            t = threading.Thread(target=self._server.serve_forever, name="rolepass-api", daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self._server.server_port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    def _setup_logging(self) -> None:
        """Configure file logging."""
        self.settings.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.settings.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.settings.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID, or None if no live daemon owns the PID file."""
    home = Path(home or ROLEPASS_HOME).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_daemon_status(port: int) -> Optional[dict]:
    """Query the running daemon's status via HTTP API.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/status", timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
