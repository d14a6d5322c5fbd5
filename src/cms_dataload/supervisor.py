"""
Supervision of the politeiad and cmswww daemons.

Each daemon's stdout (stderr merged) is copied line by line into its log
file by one background thread. start() blocks until that thread sees the
readiness marker, the daemon exits, or the readiness timeout expires.
"""
from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import IO, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import (
    CommandError,
    ProcessError,
    ProcessExitedError,
    ProcessSpawnError,
    ReadinessTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_READINESS_MARKER = "Start of day"
POLL_INTERVAL = 0.1
READER_JOIN_TIMEOUT = 5.0


@dataclass(frozen=True)
class ProcessSpec:
    """How to launch one daemon kind."""
    name: str
    argv: Sequence[str]
    log_file: str
    env: Optional[Mapping[str, str]] = None
    cwd: Optional[str] = None


@dataclass
class ManagedProcess:
    spec: ProcessSpec
    process: Optional[subprocess.Popen] = None
    log_handle: Optional[IO[str]] = None
    reader: Optional[threading.Thread] = None
    ready: threading.Event = field(default_factory=threading.Event)
    stream_closed: threading.Event = field(default_factory=threading.Event)

    @property
    def running(self) -> bool:
        return self.process is not None


class ProcessSupervisor:
    """Starts and kills the backend daemons for one dataload run."""

    def __init__(self, specs: Iterable[ProcessSpec],
                 readiness_marker: str = DEFAULT_READINESS_MARKER,
                 readiness_timeout: Optional[float] = 60.0):
        self.readiness_marker = readiness_marker
        self.readiness_timeout = readiness_timeout
        self._specs: Dict[str, ProcessSpec] = {}
        for spec in specs:
            self._specs[spec.name] = spec
        self._processes: Dict[str, ManagedProcess] = {}

    @property
    def names(self) -> List[str]:
        return list(self._specs)

    def _spec(self, name: str) -> ProcessSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ProcessError(f"Unknown process kind: {name}") from None

    def is_running(self, name: str) -> bool:
        managed = self._processes.get(name)
        return managed is not None and managed.running

    def log_path(self, name: str) -> str:
        return self._spec(name).log_file

    def pid(self, name: str) -> Optional[int]:
        managed = self._processes.get(name)
        if managed is None or managed.process is None:
            return None
        return managed.process.pid

    def start(self, name: str) -> ManagedProcess:
        """Spawn a daemon and block until it prints the readiness marker.

        Raises:
            ProcessSpawnError: log file or process could not be created
            ProcessExitedError: the daemon exited before it was ready
            ReadinessTimeoutError: no marker within readiness_timeout
        """
        spec = self._spec(name)
        if self.is_running(name):
            raise ProcessError(f"{name} is already running")

        logger.info(f"Starting {name}")
        managed = ManagedProcess(spec=spec)

        try:
            log_dir = os.path.dirname(spec.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            managed.log_handle = open(spec.log_file, "w", encoding="utf-8")
        except OSError as e:
            raise ProcessSpawnError(f"Could not open log file {spec.log_file}: {e}") from e

        env = None
        if spec.env is not None:
            env = dict(os.environ)
            env.update(spec.env)

        try:
            managed.process = subprocess.Popen(
                list(spec.argv),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                env=env,
                cwd=spec.cwd,
            )
        except OSError as e:
            managed.log_handle.close()
            raise ProcessSpawnError(f"Could not start {name}: {e}") from e

        self._processes[name] = managed

        managed.reader = threading.Thread(
            target=self._pump, args=(managed, managed.process.stdout), name=f"{name}-log", daemon=True
        )
        managed.reader.start()

        try:
            self._wait_until_ready(managed)
        except ProcessError:
            self.stop(name)
            raise

        logger.info(f"{name} is ready (pid {managed.process.pid}), logging to {spec.log_file}")
        return managed

    def _pump(self, managed: ManagedProcess, stream: IO[str]) -> None:
        """Copy daemon output into its log file, flagging the readiness marker."""
        try:
            for line in stream:
                managed.log_handle.write(line)
                managed.log_handle.flush()
                if not managed.ready.is_set() and self.readiness_marker in line:
                    managed.ready.set()
        except (OSError, ValueError) as e:
            # log handle closed by stop() while the pipe was still draining
            logger.debug(f"{managed.spec.name} log copy ended: {e}")
        finally:
            managed.stream_closed.set()

    def _wait_until_ready(self, managed: ManagedProcess) -> None:
        name = managed.spec.name
        deadline = None
        if self.readiness_timeout is not None:
            deadline = time.monotonic() + self.readiness_timeout

        while not managed.ready.wait(POLL_INTERVAL):
            if managed.stream_closed.is_set():
                if managed.ready.is_set():
                    return
                try:
                    returncode = managed.process.wait(timeout=READER_JOIN_TIMEOUT)
                except subprocess.TimeoutExpired:
                    returncode = managed.process.poll()
                raise ProcessExitedError(name, returncode)
            if deadline is not None and time.monotonic() >= deadline:
                raise ReadinessTimeoutError(name, self.readiness_marker, self.readiness_timeout)

    def stop(self, name: str) -> None:
        """Kill a daemon if it is running; no-op otherwise."""
        managed = self._processes.get(name)
        if managed is None or not managed.running:
            return

        logger.info(f"Stopping {name}")
        process = managed.process
        try:
            if process.poll() is None:
                process.kill()
            process.wait(timeout=READER_JOIN_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning(f"{name} (pid {process.pid}) did not exit after kill")
        finally:
            managed.process = None

        reader_done = True
        if managed.reader is not None:
            managed.reader.join(timeout=READER_JOIN_TIMEOUT)
            reader_done = not managed.reader.is_alive()
        if not reader_done:
            # a child still holds the pipe; the daemon reader thread keeps it
            logger.warning(f"{name} output pipe still open after kill")
            return
        if managed.log_handle is not None:
            managed.log_handle.close()
        if process.stdout is not None:
            process.stdout.close()

    def stop_all(self) -> None:
        """Stop every known daemon kind once, in declaration order."""
        for name in self._specs:
            self.stop(name)

    def run_tool(self, argv: Sequence[str], timeout: Optional[float] = None) -> str:
        """Run a one-shot helper command to completion and return its output."""
        logger.debug(f"Running {' '.join(argv)}")
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Could not run {argv[0]}: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessError(f"{argv[0]} did not finish within {timeout:g} seconds") from e

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise CommandError(argv, result.returncode, output)
        return result.stdout or ""
