"""
Worker supervisor — owns the lifecycle of the backing tool-server process.

The worker runs as a child process. Frames are written to its stdin;
a reader thread streams its stdout to ``on_output`` and a second
thread drains stderr into the log. When the process exits without
being asked to, the supervisor moves to Degraded, broadcasts a
WorkerCrashed event and restarts it within a bounded budget.
"""

from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from ..config import BridgeConfig
from ..errors import BridgeError, SpawnError, WorkerUnavailable
from ..models import WorkerCrashed, WorkerState

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("toolbridge.worker")

READ_CHUNK = 64 * 1024
STDERR_TAIL_LINES = 50


@dataclass
class WorkerProcess:
    """Handle for one spawned worker instance."""
    popen: subprocess.Popen
    session: int
    started_at: float = field(default_factory=time.monotonic)
    stderr_tail: deque = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    stderr_thread: threading.Thread | None = None
    stdout_thread: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self.popen.pid

    def is_alive(self) -> bool:
        return self.popen.poll() is None


class WorkerSupervisor:
    """
    Manages one worker process at a time.

    Responsibilities:
    - Spawn the worker and wire its three byte streams
    - Serialize writes to its stdin
    - Detect unexpected exit and restart per the RestartPolicy
    - Graceful or immediate shutdown
    """

    def __init__(
        self,
        config: BridgeConfig,
        on_output: Callable[[bytes], None] | None = None,
        on_eof: Callable[[], None] | None = None,
        on_crash: Callable[[WorkerCrashed], None] | None = None,
        on_session: Callable[[int], None] | None = None,
        handshake: Callable[[], None] | None = None,
    ):
        self.config = config
        self.on_output = on_output
        self.on_eof = on_eof
        self.on_crash = on_crash
        self.on_session = on_session
        self.handshake = handshake

        self._worker: WorkerProcess | None = None
        self._state = WorkerState.TERMINATED
        self._session = 0
        self._stopping = False
        self._restart_times: deque[float] = deque()
        self._restart_count = 0

        self._lifecycle_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Launch the worker. Raises SpawnError if it cannot be started."""
        with self._lifecycle_lock:
            if self._worker is not None and self._worker.is_alive():
                logger.warning("Worker already running, ignoring start()")
                return
            self._stopping = False
            self._spawn(fail_state=WorkerState.TERMINATED)

    def stop(self, graceful: bool = True) -> None:
        """Stop the worker. Idempotent."""
        with self._lifecycle_lock:
            self._stopping = True
            with self._state_lock:
                worker = self._worker
                self._worker = None
                self._state = WorkerState.TERMINATED
            if worker is None:
                return
            self._terminate(worker, graceful)
            logger.info(f"Worker pid={worker.pid} stopped")

        self._join(worker)

    def restart(self) -> None:
        """Operator-triggered restart. Clears the automatic restart budget."""
        with self._lifecycle_lock:
            self._stopping = False
            with self._state_lock:
                old = self._worker
                self._worker = None
                self._state = WorkerState.DEGRADED
            if old is not None:
                logger.info(f"Restarting worker pid={old.pid}")
                self._terminate(old, graceful=True)
            self._restart_times.clear()
            self._spawn(fail_state=WorkerState.DEGRADED)

        if old is not None:
            self._join(old)

    def _spawn(self, fail_state: WorkerState) -> None:
        command = self.config.command
        self._set_state(WorkerState.STARTING)
        logger.info(f"Starting worker: {' '.join(command)}")

        try:
            popen = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.config.process_env(),
                cwd=self.config.cwd,
            )
        except OSError as e:
            self._set_state(fail_state)
            raise SpawnError(f"Failed to launch worker {command[0]!r}: {e}") from e

        self._session += 1
        worker = WorkerProcess(popen=popen, session=self._session)
        worker.stderr_thread = threading.Thread(
            target=self._read_stderr,
            args=(worker,),
            name=f"toolbridge-stderr-{worker.pid}",
            daemon=True,
        )
        worker.stdout_thread = threading.Thread(
            target=self._read_stdout,
            args=(worker,),
            name=f"toolbridge-stdout-{worker.pid}",
            daemon=True,
        )
        with self._state_lock:
            self._worker = worker

        if self.on_session:
            self.on_session(worker.session)

        worker.stderr_thread.start()
        worker.stdout_thread.start()

        if self.handshake:
            try:
                self.handshake()
            except BridgeError as e:
                self._abandon(worker, fail_state)
                raise SpawnError(f"Worker handshake failed: {e}") from e

        with self._state_lock:
            if self._worker is worker and worker.is_alive():
                self._state = WorkerState.READY
                ready = True
            else:
                ready = False

        if not ready:
            self._abandon(worker, fail_state)
            raise SpawnError(
                f"Worker exited during startup (code {popen.poll()}): "
                f"{' | '.join(list(worker.stderr_tail)[-3:])}"
            )

        logger.info(f"Worker ready: pid={worker.pid} session={worker.session}")

    def _abandon(self, worker: WorkerProcess, fail_state: WorkerState) -> None:
        with self._state_lock:
            if self._worker is worker:
                self._worker = None
            self._state = fail_state
        self._terminate(worker, graceful=False)

    def _terminate(self, worker: WorkerProcess, graceful: bool) -> None:
        popen = worker.popen
        if graceful:
            with contextlib.suppress(OSError, ValueError):
                popen.stdin.close()
            try:
                popen.wait(timeout=self.config.grace_period)
                return
            except subprocess.TimeoutExpired:
                logger.warning(
                    f"Worker pid={worker.pid} did not exit within "
                    f"{self.config.grace_period}s, terminating"
                )

        popen.terminate()
        try:
            popen.wait(timeout=5)
        except subprocess.TimeoutExpired:
            popen.kill()
            popen.wait()

    def _join(self, worker: WorkerProcess) -> None:
        current = threading.current_thread()
        for thread in (worker.stdout_thread, worker.stderr_thread):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=2)

    # ── I/O ──────────────────────────────────────────────────

    def write(self, data: bytes) -> None:
        """Write one frame to the worker. Fails fast unless the worker is Ready."""
        self._write(data, allowed=(WorkerState.READY,))

    def write_startup(self, data: bytes) -> None:
        """Write during the handshake, while the worker is still Starting."""
        self._write(data, allowed=(WorkerState.STARTING, WorkerState.READY))

    def _write(self, data: bytes, allowed: tuple[WorkerState, ...]) -> None:
        with self._state_lock:
            state = self._state
            worker = self._worker

        if worker is None or state not in allowed:
            raise WorkerUnavailable(f"Worker is {state.value}")

        with self._write_lock:
            try:
                worker.popen.stdin.write(data)
                worker.popen.stdin.flush()
            except (OSError, ValueError) as e:
                raise WorkerUnavailable(f"Write to worker pid={worker.pid} failed: {e}") from e

    def _read_stdout(self, worker: WorkerProcess) -> None:
        stream = worker.popen.stdout
        try:
            while True:
                chunk = stream.read1(READ_CHUNK)
                if not chunk:
                    break
                if self.on_output:
                    self.on_output(chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"stdout reader for pid={worker.pid} stopped: {e}")
        finally:
            # A last reply without a trailing newline is still delivered before the crash event.
            if self.on_eof and self._worker is worker:
                self.on_eof()
            self._on_exit(worker)

    def _read_stderr(self, worker: WorkerProcess) -> None:
        try:
            for raw in worker.popen.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                worker.stderr_tail.append(line)
                worker_logger.debug(f"[pid={worker.pid}] {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"stderr reader for pid={worker.pid} stopped: {e}")

    # ── Exit handling ────────────────────────────────────────

    def _on_exit(self, worker: WorkerProcess) -> None:
        returncode = worker.popen.wait()
        if worker.stderr_thread is not None:
            worker.stderr_thread.join(timeout=1)

        with self._state_lock:
            current = self._worker is worker
            was_ready = current and self._state == WorkerState.READY
            if self._stopping or not current:
                return
            if was_ready:
                self._state = WorkerState.DEGRADED

        event = WorkerCrashed(
            pid=worker.pid,
            returncode=returncode,
            stderr_tail=list(worker.stderr_tail),
        )

        if not was_ready:
            # Still starting: let waiters (the handshake) fail fast; start() owns the state.
            logger.warning(f"Worker exited during startup: {event.describe()}")
            self._emit_crash(event)
            return

        if returncode == 0:
            logger.error(f"Worker exited unexpectedly: {event.describe()}")
        else:
            logger.error(f"Worker crashed: {event.describe()}")

        self._emit_crash(event)
        self._maybe_restart()

    def _emit_crash(self, event: WorkerCrashed) -> None:
        if not self.on_crash:
            return
        try:
            self.on_crash(event)
        except Exception:
            logger.exception("WorkerCrashed listener failed")

    def _maybe_restart(self) -> None:
        policy = self.config.restart
        if not policy.enabled:
            logger.warning("Automatic restart disabled, worker stays Degraded")
            return

        while True:
            now = time.monotonic()
            while self._restart_times and now - self._restart_times[0] > policy.window:
                self._restart_times.popleft()

            if len(self._restart_times) >= policy.max_restarts:
                logger.error(
                    f"Restart budget exhausted ({policy.max_restarts} in {policy.window}s), "
                    f"worker stays Degraded until restarted by an operator"
                )
                return

            self._restart_times.append(now)
            if policy.delay > 0:
                time.sleep(policy.delay)

            with self._lifecycle_lock:
                if self._stopping or self.state != WorkerState.DEGRADED:
                    return
                self._restart_count += 1
                try:
                    self._spawn(fail_state=WorkerState.DEGRADED)
                    return
                except SpawnError as e:
                    logger.error(
                        f"Automatic restart {len(self._restart_times)}/{policy.max_restarts} "
                        f"failed: {e}"
                    )

    # ── Introspection ────────────────────────────────────────

    def _set_state(self, state: WorkerState) -> None:
        with self._state_lock:
            self._state = state

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    @property
    def pid(self) -> int | None:
        worker = self._worker
        return worker.pid if worker else None

    @property
    def session(self) -> int:
        return self._session

    @property
    def restart_count(self) -> int:
        return self._restart_count

    def is_alive(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def stderr_tail(self) -> list[str]:
        worker = self._worker
        return list(worker.stderr_tail) if worker else []
