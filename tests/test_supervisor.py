"""
Tests for the worker supervisor against the bundled echo worker.

These spawn real subprocesses (python -m toolbridge.mcp.servers.echo).
"""

import os
import signal
import sys
import threading

import pytest

from toolbridge.config import BridgeConfig
from toolbridge.errors import SpawnError, WorkerUnavailable
from toolbridge.mcp.codec import encode
from toolbridge.mcp.supervisor import WorkerSupervisor
from toolbridge.models import WorkerState


@pytest.fixture
def supervisors():
    started = []
    yield started
    for supervisor in started:
        supervisor.stop(graceful=False)


def _supervisor(config, supervisors, **callbacks) -> WorkerSupervisor:
    supervisor = WorkerSupervisor(config, **callbacks)
    supervisors.append(supervisor)
    return supervisor


def _crash_frame(code: int = 3) -> bytes:
    return encode(1, "tools/call", {"name": "crash", "arguments": {"code": code}})


# ── Lifecycle ────────────────────────────────────────────────

class TestLifecycle:
    def test_initial_state_is_terminated(self, echo_config):
        supervisor = WorkerSupervisor(echo_config())
        assert supervisor.state == WorkerState.TERMINATED
        assert supervisor.pid is None

    def test_start_and_stop(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()

        assert supervisor.state == WorkerState.READY
        assert supervisor.is_alive()
        assert supervisor.pid is not None
        assert supervisor.session == 1

        supervisor.stop()
        assert supervisor.state == WorkerState.TERMINATED
        assert not supervisor.is_alive()

    def test_stop_is_idempotent(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()
        supervisor.stop()
        supervisor.stop()
        supervisor.stop(graceful=False)
        assert supervisor.state == WorkerState.TERMINATED

    def test_stop_before_start(self, echo_config):
        supervisor = WorkerSupervisor(echo_config())
        supervisor.stop()
        assert supervisor.state == WorkerState.TERMINATED

    def test_graceful_stop_lets_worker_exit_cleanly(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()
        popen = supervisor._worker.popen

        supervisor.stop(graceful=True)
        assert popen.returncode == 0

    def test_immediate_stop_terminates(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()
        popen = supervisor._worker.popen

        supervisor.stop(graceful=False)
        assert popen.returncode is not None
        assert popen.returncode != 0

    def test_missing_executable_raises_spawn_error(self, supervisors):
        config = BridgeConfig(command=["/nonexistent/worker-binary"])
        supervisor = _supervisor(config, supervisors)

        with pytest.raises(SpawnError) as exc:
            supervisor.start()
        assert exc.value.kind == "spawn_error"
        assert supervisor.state == WorkerState.TERMINATED

    def test_start_twice_keeps_one_worker(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()
        pid = supervisor.pid
        supervisor.start()
        assert supervisor.pid == pid
        assert supervisor.session == 1


# ── Writes ───────────────────────────────────────────────────

class TestWrites:
    def test_output_reaches_callback(self, echo_config, supervisors, wait_until):
        chunks = []
        supervisor = _supervisor(echo_config(), supervisors, on_output=chunks.append)
        supervisor.start()

        supervisor.write(encode(1, "ping", {}))
        assert wait_until(lambda: b"\n" in b"".join(chunks))
        assert b'"id": 1' in b"".join(chunks)

    def test_write_after_stop_fails_fast(self, echo_config, supervisors):
        supervisor = _supervisor(echo_config(), supervisors)
        supervisor.start()
        supervisor.stop()

        with pytest.raises(WorkerUnavailable, match="Terminated"):
            supervisor.write(encode(1, "ping", {}))

    def test_write_before_start_fails_fast(self, echo_config):
        supervisor = WorkerSupervisor(echo_config())
        with pytest.raises(WorkerUnavailable):
            supervisor.write(encode(1, "ping", {}))


# ── Crash detection and restart ──────────────────────────────

class TestCrash:
    def test_crash_event_carries_exit_code_and_stderr(self, echo_config, supervisors):
        events = []
        crashed = threading.Event()

        def on_crash(event):
            events.append(event)
            crashed.set()

        config = echo_config(restart={"enabled": False})
        supervisor = _supervisor(config, supervisors, on_crash=on_crash)
        supervisor.start()
        pid = supervisor.pid

        supervisor.write(_crash_frame(3))
        assert crashed.wait(5)

        event = events[0]
        assert event.pid == pid
        assert event.returncode == 3
        assert any("crash requested with code 3" in line for line in event.stderr_tail)
        assert supervisor.state == WorkerState.DEGRADED

    def test_degraded_rejects_writes(self, echo_config, supervisors, wait_until):
        supervisor = _supervisor(echo_config(restart={"enabled": False}), supervisors)
        supervisor.start()
        supervisor.write(_crash_frame())

        assert wait_until(lambda: supervisor.state == WorkerState.DEGRADED)
        with pytest.raises(WorkerUnavailable, match="Degraded"):
            supervisor.write(encode(2, "ping", {}))

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_signal_termination_is_a_crash(self, echo_config, supervisors):
        events = []
        crashed = threading.Event()

        def on_crash(event):
            events.append(event)
            crashed.set()

        supervisor = _supervisor(echo_config(restart={"enabled": False}), supervisors, on_crash=on_crash)
        supervisor.start()
        os.kill(supervisor.pid, signal.SIGKILL)

        assert crashed.wait(5)
        assert events[0].signaled
        assert "signal" in events[0].describe()

    def test_stop_is_not_a_crash(self, echo_config, supervisors):
        events = []
        supervisor = _supervisor(echo_config(), supervisors, on_crash=events.append)
        supervisor.start()
        supervisor.stop()
        assert events == []
        assert supervisor.restart_count == 0

    def test_auto_restart(self, echo_config, supervisors, wait_until):
        sessions = []
        supervisor = _supervisor(echo_config(), supervisors, on_session=sessions.append)
        supervisor.start()
        first_pid = supervisor.pid

        supervisor.write(_crash_frame())
        assert wait_until(lambda: supervisor.session == 2 and supervisor.state == WorkerState.READY)

        assert supervisor.pid != first_pid
        assert supervisor.restart_count == 1
        assert sessions == [1, 2]

    def test_restart_budget_exhausted(self, echo_config, supervisors, wait_until):
        config = echo_config(restart={"max_restarts": 1, "window": 60, "delay": 0})
        supervisor = _supervisor(config, supervisors)
        supervisor.start()

        supervisor.write(_crash_frame())
        assert wait_until(lambda: supervisor.session == 2 and supervisor.state == WorkerState.READY)

        supervisor.write(_crash_frame())
        assert wait_until(lambda: supervisor.state == WorkerState.DEGRADED and not supervisor.is_alive())
        assert not wait_until(lambda: supervisor.session == 3, timeout=0.5)

        supervisor.restart()
        assert supervisor.state == WorkerState.READY
        assert supervisor.session == 3
        assert supervisor.is_alive()

    def test_failed_respawn_is_retried(self, echo_config, supervisors, wait_until):
        config = echo_config(restart={"max_restarts": 3, "window": 60, "delay": 0})
        supervisor = _supervisor(config, supervisors)
        supervisor.start()
        good_command = config.command
        spawn = supervisor._spawn
        attempts = []

        def spawn_missing_binary_once(fail_state):
            attempts.append(fail_state)
            if len(attempts) > 1:
                return spawn(fail_state)
            config.command = ["/nonexistent/worker-binary"]
            try:
                return spawn(fail_state)
            finally:
                config.command = good_command

        supervisor._spawn = spawn_missing_binary_once
        supervisor.write(_crash_frame())

        assert wait_until(lambda: supervisor.state == WorkerState.READY and supervisor.session == 2)
        assert len(attempts) == 2
        assert supervisor.restart_count == 2
        assert supervisor.is_alive()

    def test_failed_respawns_use_up_budget(self, echo_config, supervisors, wait_until):
        config = echo_config(restart={"max_restarts": 2, "window": 60, "delay": 0})
        supervisor = _supervisor(config, supervisors)
        supervisor.start()

        config.command = ["/nonexistent/worker-binary"]
        supervisor.write(_crash_frame())

        assert wait_until(lambda: supervisor.restart_count == 2)
        assert not wait_until(lambda: supervisor.restart_count > 2, timeout=0.5)
        assert supervisor.state == WorkerState.DEGRADED
        assert supervisor.session == 1

    def test_unterminated_output_is_flushed_before_crash(self, supervisors, wait_until):
        events = []
        script = (
            "import sys; sys.stdin.readline(); "
            "sys.stdout.write('{\"jsonrpc\": \"2.0\", \"id\": 1, \"result\": {}}'); "
            "sys.stdout.flush(); sys.exit(1)"
        )
        config = BridgeConfig.from_dict({
            "command": [sys.executable, "-c", script],
            "restart": {"enabled": False},
        })
        supervisor = _supervisor(
            config,
            supervisors,
            on_output=lambda chunk: events.append(("output", chunk)),
            on_eof=lambda: events.append(("eof", None)),
            on_crash=lambda event: events.append(("crash", event.returncode)),
        )
        supervisor.start()
        supervisor.write(b"go\n")

        assert wait_until(lambda: any(kind == "crash" for kind, _ in events))
        assert [kind for kind, _ in events][-2:] == ["eof", "crash"]
        output = b"".join(data for kind, data in events if kind == "output")
        assert output.endswith(b'"result": {}}')
        assert events[-1] == ("crash", 1)

    def test_operator_restart_replaces_healthy_worker(self, echo_config, supervisors):
        events = []
        supervisor = _supervisor(echo_config(), supervisors, on_crash=events.append)
        supervisor.start()
        old_pid = supervisor.pid

        supervisor.restart()
        assert supervisor.state == WorkerState.READY
        assert supervisor.pid != old_pid
        assert events == []
