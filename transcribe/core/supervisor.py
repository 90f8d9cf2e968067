"""
Lifecycle of the local inference server behind the Whisperfile engine.

States: NOT_STARTED -> STARTING -> READY <-> BUSY -> STOPPED.
STOPPED is terminal; a new supervisor is needed to run the server again.
Requests are serialized: a caller arriving while another request is in
flight waits for it to finish.
"""

import concurrent.futures
import logging
import math
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

import requests

from transcribe.core.errors import (
    HealthCheckTimeout,
    NotLoaded,
    ServerCrashed,
    ServerStartTimeout,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROBE_TIMEOUT_SEC = 1.0


class ServerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ServerConfig:
    binary: str
    model_path: Path
    host: str = "127.0.0.1"
    port: int = 8080
    startup_timeout_secs: float = 30.0
    health_check_interval_secs: float = 0.1

    @property
    def max_attempts(self) -> int:
        return max(1, math.ceil(self.startup_timeout_secs / self.health_check_interval_secs))


def find_free_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class ServerSupervisor:
    """
    Owns at most one server process.

    The process is spawned by `start()` and torn down by `stop()` (also on
    context-manager exit). `request(fn)` runs `fn(base_url)` on a worker
    thread while the process is watched; if the process exits mid-request the
    supervisor moves to STOPPED and raises ServerCrashed.
    """

    def __init__(self, config: ServerConfig, http: requests.Session | None = None):
        self.config = config
        self.http = http or requests.Session()
        self.port = config.port or find_free_port(config.host)
        self._process: subprocess.Popen | None = None
        self._state = ServerState.NOT_STARTED
        self._lock = threading.Lock()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def base_url(self) -> str:
        return f"http://{self.config.host}:{self.port}"

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def command(self) -> list[str]:
        return [
            self.config.binary,
            "--server",
            "-m",
            str(self.config.model_path),
            "--host",
            self.config.host,
            "--port",
            str(self.port),
        ]

    def start(self) -> None:
        """
        Spawn the server and wait until it answers health checks.

        Raises:
            ServerStartTimeout: spawn failed, the process exited, or the
                health-check attempts ran out. No process is left running.
        """
        if self._state != ServerState.NOT_STARTED:
            raise RuntimeError(f"cannot start server in state {self._state.value}")

        self._state = ServerState.STARTING
        cmd = self.command()
        logger.info(f"🚀 Starting inference server: {' '.join(cmd)}")
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._state = ServerState.STOPPED
            raise ServerStartTimeout(f"failed to spawn {self.config.binary}: {e}") from e

        try:
            self._wait_until_healthy()
        except BaseException:
            self._terminate()
            self._state = ServerState.STOPPED
            raise

        self._state = ServerState.READY
        logger.info(f"✅ Inference server ready at {self.base_url} (pid {self.pid})")

    def _wait_until_healthy(self) -> None:
        attempts = self.config.max_attempts
        for _ in range(attempts):
            code = self._process.poll()
            if code is not None:
                raise ServerStartTimeout(f"server exited during startup with code {code}")
            try:
                self.probe()
                return
            except (HealthCheckTimeout, requests.RequestException) as e:
                logger.debug(f"Health check failed: {e}")
            time.sleep(self.config.health_check_interval_secs)

        raise ServerStartTimeout(
            f"server not ready after {attempts} health checks "
            f"({self.config.startup_timeout_secs}s)"
        )

    def probe(self) -> None:
        """
        One health check: any HTTP answer on `/` means the server is up.

        Raises:
            HealthCheckTimeout: no answer within PROBE_TIMEOUT_SEC
            requests.RequestException: nothing listening yet, or a half-started server
                broke the exchange
        """
        try:
            self.http.get(f"{self.base_url}/", timeout=PROBE_TIMEOUT_SEC)
        except requests.Timeout as e:
            raise HealthCheckTimeout(f"no answer from {self.base_url} within {PROBE_TIMEOUT_SEC}s") from e

    def request(self, fn: Callable[[str], T]) -> T:
        """Run `fn(base_url)` against the server, one caller at a time."""
        with self._lock:
            if self._state != ServerState.READY:
                raise NotLoaded(f"Inference server is not running (state: {self._state.value})")

            self._state = ServerState.BUSY
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
            try:
                future = executor.submit(fn, self.base_url)
                while True:
                    done, _ = concurrent.futures.wait([future], timeout=self.config.health_check_interval_secs)
                    if done:
                        break
                    if self._process.poll() is not None:
                        self._crashed()

                try:
                    return future.result()
                except requests.RequestException:
                    if self._process.poll() is not None:
                        self._crashed()
                    raise
            finally:
                executor.shutdown(wait=False)
                if self._state == ServerState.BUSY:
                    self._state = ServerState.READY

    def _crashed(self) -> None:
        code = self._process.poll()
        self._process = None
        self._state = ServerState.STOPPED
        logger.error(f"❌ Inference server exited with code {code} during a request")
        raise ServerCrashed(f"inference server exited with code {code}")

    def stop(self) -> None:
        if self._state == ServerState.STOPPED:
            return
        self._terminate()
        self._state = ServerState.STOPPED
        self.http.close()

    def _terminate(self) -> None:
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        logger.info(f"🛑 Stopping inference server (pid {process.pid})")
        process.terminate()
        try:
            process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            logger.warning("Inference server did not respond to terminate, killing...")
            process.kill()
            process.wait(timeout=1.0)

    def __enter__(self) -> "ServerSupervisor":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
