"""Spawn the tunnel process and wait for it to connect.

This module handles:
    - Process spawning (``<java> -jar <jar> -authkey <key>``)
    - Reading stdout in raw chunks and splitting them into lines
    - Racing the readiness line against a startup deadline
    - Idempotent termination
    - A process-wide atexit hook so a tunnel never outlives the host

The readiness race runs on two daemon threads, a stdout reader and a
``threading.Timer``. Both report through a ``ReadinessLatch``; only the
first report takes effect.
"""

from __future__ import annotations

import atexit
import logging
import subprocess
import threading
import weakref
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from cbt_tunnel.config import DEFAULT_JAVA_PATH, DEFAULT_READY_TOKEN
from cbt_tunnel.errors import ConfigurationError, SpawnError, TunnelTimeoutError
from cbt_tunnel.fetch import BinaryArtifact
from cbt_tunnel.lines import LineSplitter

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
RECENT_OUTPUT_LINES = 200
KILL_WAIT_SECONDS = 5.0


class SupervisorState(str, Enum):
    """Lifecycle of one controller invocation."""

    IDLE = "idle"
    FETCHING = "fetching"
    SPAWNING = "spawning"
    AWAITING_READINESS = "awaiting_readiness"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SupervisorState.READY, SupervisorState.FAILED)


class ReadinessOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


def build_command(java_path: str, artifact_path: Path, credential: str) -> list[str]:
    """Return the argv used to start the tunnel."""
    return [java_path, "-jar", str(artifact_path), "-authkey", credential]


def redact_command(command: Sequence[str]) -> list[str]:
    """Copy of ``command`` with the ``-authkey`` value masked."""
    redacted = list(command)
    for i, arg in enumerate(redacted[:-1]):
        if arg == "-authkey":
            redacted[i + 1] = "****"
    return redacted


# =============================================================================
# Process handle
# =============================================================================


class ProcessHandle:
    """A spawned tunnel process.

    Owned by whoever launched it. ``terminate()`` (alias ``kill()``) may be
    called any number of times from any thread.
    """

    def __init__(self, process: subprocess.Popen[bytes], command: Sequence[str]):
        self._process = process
        self.command = list(command)
        self.recent_output: deque[str] = deque(maxlen=RECENT_OUTPUT_LINES)
        self._killed = False
        self._lock = threading.Lock()
        self._reader: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    @property
    def killed(self) -> bool:
        """True once a kill signal has been sent through this handle."""
        return self._killed

    @property
    def is_terminated(self) -> bool:
        """True if the process was killed or has exited on its own."""
        return self._killed or self._process.poll() is not None

    def read_chunk(self) -> bytes:
        """Read whatever stdout has available (up to READ_CHUNK_SIZE bytes).

        Returns ``b""`` at end of stream or once the pipe is closed.
        """
        stdout = self._process.stdout
        if stdout is None:
            return b""
        try:
            return stdout.read(READ_CHUNK_SIZE) or b""
        except (OSError, ValueError):
            return b""

    def terminate(self) -> bool:
        """Kill the process if it is still running.

        Returns:
            True if this call performed the termination, False if the
            handle was already terminated.
        """
        with self._lock:
            if self._killed:
                return False
            self._killed = True

        if self._process.poll() is None:
            try:
                self._process.kill()
            except OSError as e:
                # Exited between poll() and kill()
                logger.debug("Kill of tunnel pid %s raised %s", self.pid, e)
            try:
                self._process.wait(timeout=KILL_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Tunnel pid %s did not exit within %ss of kill",
                    self.pid,
                    KILL_WAIT_SECONDS,
                )
        logger.debug("Tunnel pid %s terminated (returncode=%s)", self.pid, self.returncode)
        return True

    kill = terminate

    def __enter__(self) -> ProcessHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.terminate()

    def __repr__(self) -> str:
        state = "terminated" if self.is_terminated else "running"
        return f"<ProcessHandle pid={self.pid} {state} {' '.join(redact_command(self.command))!r}>"


# =============================================================================
# Host exit hook
# =============================================================================


_live_handles: weakref.WeakSet[ProcessHandle] = weakref.WeakSet()
_exit_hook_lock = threading.Lock()
_exit_hook_installed = False


def terminate_live_handles() -> int:
    """Terminate every handle still registered. Returns how many were killed.

    Runs at interpreter exit; also safe to call directly.
    """
    killed = 0
    for handle in list(_live_handles):
        try:
            if handle.terminate():
                killed += 1
        except Exception as e:
            logger.debug("Exit cleanup of %r failed: %s", handle, e)
        _live_handles.discard(handle)
    if killed:
        logger.debug("Exit hook terminated %d tunnel process(es)", killed)
    return killed


def install_exit_hook() -> None:
    """Register ``terminate_live_handles`` with atexit, once per process."""
    global _exit_hook_installed
    with _exit_hook_lock:
        if _exit_hook_installed:
            return
        atexit.register(terminate_live_handles)
        _exit_hook_installed = True


def register_handle(handle: ProcessHandle) -> None:
    """Track ``handle`` (weakly) for termination at host exit."""
    install_exit_hook()
    _live_handles.add(handle)


# =============================================================================
# Readiness race
# =============================================================================


class ReadinessLatch:
    """One-shot resolution guard for the readiness race.

    ``resolve()`` succeeds for the first caller only. The winner's
    ``action`` runs under the latch before waiters are released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._outcome: ReadinessOutcome | None = None

    @property
    def outcome(self) -> ReadinessOutcome | None:
        return self._outcome

    @property
    def resolved(self) -> bool:
        return self._outcome is not None

    def resolve(
        self,
        outcome: ReadinessOutcome,
        action: Callable[[], object] | None = None,
    ) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            if action is not None:
                action()
        self._event.set()
        return True

    def wait(self, timeout: float | None = None) -> ReadinessOutcome | None:
        self._event.wait(timeout)
        return self._outcome


class ProcessSupervisor:
    """Launches tunnel processes and waits for them to connect.

    Constructing a supervisor installs the host exit hook. The supervisor
    keeps only a weak reference to the last handle it launched.
    """

    def __init__(
        self,
        java_path: str = DEFAULT_JAVA_PATH,
        ready_token: str = DEFAULT_READY_TOKEN,
    ) -> None:
        self.java_path = java_path
        self.ready_token = ready_token
        self._active: weakref.ref[ProcessHandle] | None = None
        install_exit_hook()

    @property
    def active_handle(self) -> ProcessHandle | None:
        return self._active() if self._active is not None else None

    def launch(self, artifact: BinaryArtifact | Path | str, credential: str) -> ProcessHandle:
        """Start the tunnel jar with ``credential`` as its auth key.

        Raises:
            ConfigurationError: If ``credential`` is empty.
            SpawnError: If the process cannot be created.
        """
        if not credential:
            raise ConfigurationError("A credential is required to launch the tunnel")

        artifact_path = artifact.path if isinstance(artifact, BinaryArtifact) else Path(artifact)
        command = build_command(self.java_path, artifact_path, credential)
        logger.info("Spawning cbttunnel process...")
        logger.debug("Command: %s", " ".join(redact_command(command)))

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                bufsize=0,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(f"Could not start tunnel with {self.java_path!r}: {e}") from e

        handle = ProcessHandle(process, command)
        register_handle(handle)
        self._active = weakref.ref(handle)
        logger.debug("Spawned tunnel pid %s", handle.pid)
        return handle

    def await_ready(
        self,
        handle: ProcessHandle,
        timeout_ms: int,
        *,
        ready_token: str | None = None,
    ) -> ProcessHandle:
        """Block until ``handle`` prints the readiness token or time runs out.

        Output keeps being drained after readiness so the child never stalls
        on a full pipe.

        Args:
            handle: A freshly launched process
            timeout_ms: Startup deadline in milliseconds
            ready_token: Overrides the supervisor's token for this call

        Returns:
            ``handle``, still running.

        Raises:
            TunnelTimeoutError: If the deadline passed first; the process has
                been terminated.
            RuntimeError: If output of ``handle`` is already being awaited.
        """
        token = ready_token or self.ready_token
        latch = ReadinessLatch()

        def on_deadline() -> None:
            if latch.resolve(ReadinessOutcome.TIMED_OUT, handle.terminate):
                logger.warning(
                    "Tunnel pid %s did not report %r within %dms",
                    handle.pid,
                    token,
                    timeout_ms,
                )

        timer = threading.Timer(timeout_ms / 1000.0, on_deadline)
        timer.daemon = True
        timer.name = f"cbt-tunnel-deadline-{handle.pid}"

        def on_ready() -> None:
            timer.cancel()
            logger.info("CBT Tunnel started (pid %s)", handle.pid)

        def on_line(line: str) -> None:
            if token in line:
                latch.resolve(ReadinessOutcome.READY, on_ready)

        with handle._lock:
            if handle._reader is not None:
                raise RuntimeError(f"Already reading output of {handle!r}")
            reader = threading.Thread(
                target=self._pump_output,
                args=(handle, LineSplitter(), on_line),
                name=f"cbt-tunnel-stdout-{handle.pid}",
                daemon=True,
            )
            handle._reader = reader

        timer.start()
        reader.start()
        try:
            outcome = latch.wait()
        except BaseException:
            latch.resolve(ReadinessOutcome.ABANDONED, timer.cancel)
            handle.terminate()
            raise

        if outcome is ReadinessOutcome.TIMED_OUT:
            raise TunnelTimeoutError(timeout_ms)
        if outcome is ReadinessOutcome.ABANDONED:
            raise RuntimeError(f"Readiness wait for {handle!r} was abandoned")
        return handle

    def terminate(self, handle: ProcessHandle | None = None) -> bool:
        """Terminate ``handle`` (default: the last launched one). Idempotent."""
        target = handle if handle is not None else self.active_handle
        if target is None:
            return False
        return target.terminate()

    def _pump_output(
        self,
        handle: ProcessHandle,
        splitter: LineSplitter,
        on_line: Callable[[str], None],
    ) -> None:
        while True:
            chunk = handle.read_chunk()
            if not chunk:
                break
            for line in splitter.feed(chunk):
                self._dispatch(handle, line, on_line)
        # Unterminated tail at EOF: recorded, never matched against the token
        for line in splitter.flush():
            self._dispatch(handle, line, None)
        logger.debug(
            "Tunnel pid %s closed stdout (returncode=%s)", handle.pid, handle.returncode
        )

    @staticmethod
    def _dispatch(
        handle: ProcessHandle, line: str, on_line: Callable[[str], None] | None
    ) -> None:
        if not line or not line.strip():
            return
        handle.recent_output.append(line)
        logger.debug("[tunnel %s] %s", handle.pid, line)
        if on_line is not None:
            on_line(line)


__all__ = [
    "KILL_WAIT_SECONDS",
    "ProcessHandle",
    "ProcessSupervisor",
    "ReadinessLatch",
    "ReadinessOutcome",
    "SupervisorState",
    "build_command",
    "install_exit_hook",
    "redact_command",
    "register_handle",
    "terminate_live_handles",
]
