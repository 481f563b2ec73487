"""Local Prefect server for CLI runs.

`storyloop run` and `storyloop resume` execute as Prefect flows. When no
PREFECT_API_URL is configured we point Prefect at a local server on
127.0.0.1:4200, starting one in the background if nothing answers there,
so runs show up in the dashboard. If the server will not come up, the run
goes ahead against Prefect's ephemeral API instead. Setting
STORYLOOP_PREFECT_EPHEMERAL=1 skips the server entirely.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Optional
from urllib.error import URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

EPHEMERAL_ENV = "STORYLOOP_PREFECT_EPHEMERAL"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4200

SERVER_START_TIMEOUT_SECONDS = 30
HEALTH_CHECK_INTERVAL_SECONDS = 0.5
SERVER_LOG = "prefect-server.log"


class LocalPrefectServer:
    """A `prefect server start` process on this machine."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        self.host = host
        self.port = port

    @property
    def api_url(self) -> str:
        return f"http://{self.host}:{self.port}/api"

    def healthy(self) -> bool:
        try:
            with urlopen(f"{self.api_url}/health", timeout=2) as response:
                return response.status == 200
        except (URLError, TimeoutError, OSError):
            return False

    def start(self, log_path: Optional[Path] = None) -> subprocess.Popen:
        """Launch the server detached from this process."""
        logger.info(f"[PREFECT] Starting server on {self.host}:{self.port}")
        output = open(log_path, "ab") if log_path else subprocess.DEVNULL
        try:
            return subprocess.Popen(
                ["prefect", "server", "start", "--host", self.host, "--port", str(self.port)],
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        finally:
            if log_path:
                output.close()

    def wait_healthy(self, timeout: float = SERVER_START_TIMEOUT_SECONDS) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.healthy():
                return True
            time.sleep(HEALTH_CHECK_INTERVAL_SECONDS)
        return False


def _ephemeral_requested() -> bool:
    return os.environ.get(EPHEMERAL_ENV, "").lower() in ("1", "true", "yes")


def ensure_prefect_server(ops_dir: Optional[Path] = None, server: Optional[LocalPrefectServer] = None) -> Optional[str]:
    """Make sure flows have an API to report to.

    Returns the API URL flows will use, or None for ephemeral mode. Server
    output goes to <ops_dir>/prefect-server.log when ops_dir is given.
    """
    if _ephemeral_requested():
        logger.debug("[PREFECT] Using ephemeral API")
        return None

    configured = os.environ.get("PREFECT_API_URL")
    if configured:
        logger.debug(f"[PREFECT] Using configured API at {configured}")
        return configured

    server = server or LocalPrefectServer()
    if not server.healthy():
        log_path = None
        if ops_dir is not None:
            ops_dir.mkdir(parents=True, exist_ok=True)
            log_path = ops_dir / SERVER_LOG
        try:
            server.start(log_path)
        except FileNotFoundError:
            logger.warning("[PREFECT] 'prefect' command not found, using ephemeral API")
            return None
        if not server.wait_healthy():
            logger.warning(f"[PREFECT] Server not healthy after {SERVER_START_TIMEOUT_SECONDS}s, "
                           f"using ephemeral API (try: prefect server start)")
            return None
        logger.info(f"[PREFECT] Server started, dashboard at http://{server.host}:{server.port}")

    os.environ["PREFECT_API_URL"] = server.api_url
    return server.api_url
