"""Unit tests for the local sandbox provider and the sandbox registry."""

import asyncio
from pathlib import Path
from typing import List, Optional

import pytest
from hypothesis import given, settings, strategies as st

from src.aicoder.sandbox.provider import (
    CommandResult,
    CommandTimeoutError,
    LocalSandboxProvider,
    SandboxClosedError,
    SandboxError,
)
from src.aicoder.sandbox.registry import SandboxRegistry, SessionAlreadyRegisteredError


def run_async(coro):
    return asyncio.run(coro)


class FakeSandbox:
    """Minimal SandboxHandle that records kills."""

    def __init__(self, sandbox_id: str = "sbx-1", fail_kill: bool = False):
        self.sandbox_id = sandbox_id
        self.fail_kill = fail_kill
        self.kill_calls = 0

    @property
    def is_alive(self) -> bool:
        return self.kill_calls == 0

    async def exec(self, command: str, cwd: Optional[str] = None, timeout_ms: Optional[int] = None):
        return CommandResult(exit_code=0, stdout="", stderr="")

    async def write_file(self, path: str, content: str) -> None:
        pass

    async def kill(self) -> None:
        self.kill_calls += 1
        if self.fail_kill:
            raise RuntimeError("kill failed")


# ---------------------------------------------------------------------------
# LocalSandbox
# ---------------------------------------------------------------------------


class TestLocalSandbox:
    def test_exec_captures_output(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path).provision("tmpl", 5_000)
            ok = await sandbox.exec("echo hello && echo oops >&2")
            bad = await sandbox.exec("exit 3")
            return ok, bad

        ok, bad = run_async(scenario())
        assert ok.success
        assert ok.stdout == "hello"
        assert ok.stderr == "oops"
        assert not bad.success
        assert bad.exit_code == 3

    def test_env_and_cwd(self, tmp_path):
        async def scenario():
            provider = LocalSandboxProvider(tmp_path)
            sandbox = await provider.provision("tmpl", 5_000, env={"AGENT_KEY": "k-1"})
            await sandbox.write_file("repo/notes.txt", "hi")
            result = await sandbox.exec('cat notes.txt && printf " $AGENT_KEY"', cwd="repo")
            return sandbox, result

        sandbox, result = run_async(scenario())
        assert result.stdout == "hi k-1"
        assert (sandbox.root / "repo" / "notes.txt").read_text() == "hi"

    def test_timeout(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path).provision("tmpl", 5_000)
            await sandbox.exec("sleep 5", timeout_ms=100)

        with pytest.raises(CommandTimeoutError) as exc_info:
            run_async(scenario())
        assert exc_info.value.timeout_ms == 100

    def test_paths_cannot_escape_root(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path / "boxes").provision("tmpl", 5_000)
            await sandbox.write_file("../escape.txt", "x")

        with pytest.raises(SandboxError):
            run_async(scenario())
        assert not (tmp_path / "boxes" / "escape.txt").exists()

    def test_kill_removes_root_and_closes(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path).provision("tmpl", 5_000)
            await sandbox.kill()
            await sandbox.kill()
            return sandbox

        sandbox = run_async(scenario())
        assert not sandbox.is_alive
        assert not sandbox.root.exists()
        with pytest.raises(SandboxClosedError):
            run_async(sandbox.exec("true"))

    def test_kill_interrupts_running_command(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path).provision("tmpl", 10_000)
            running = asyncio.create_task(sandbox.exec("sleep 5"))
            await asyncio.sleep(0.2)
            await sandbox.kill()
            await running

        with pytest.raises(SandboxClosedError):
            run_async(scenario())

    def test_cancelled_command_kills_its_processes(self, tmp_path):
        async def scenario():
            sandbox = await LocalSandboxProvider(tmp_path).provision("tmpl", 60_000)
            running = asyncio.create_task(
                sandbox.exec("sleep 30 & echo $! > sleeper.pid; wait")
            )
            pid_file = sandbox.root / "sleeper.pid"
            for _ in range(100):
                if pid_file.exists() and pid_file.read_text().strip():
                    break
                await asyncio.sleep(0.05)
            pid = int(pid_file.read_text())

            running.cancel()
            with pytest.raises(asyncio.CancelledError):
                await running

            for _ in range(40):
                if not _is_running(pid):
                    break
                await asyncio.sleep(0.05)
            alive = _is_running(pid)
            await sandbox.kill()
            return alive

        assert run_async(scenario()) is False


def _is_running(pid: int) -> bool:
    """True unless the pid is gone or only a zombie remains."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


# ---------------------------------------------------------------------------
# SandboxRegistry
# ---------------------------------------------------------------------------


class TestSandboxRegistry:
    def test_register_and_release(self):
        counts: List[int] = []

        async def scenario():
            registry = SandboxRegistry(on_count_change=counts.append)
            handle = FakeSandbox()
            await registry.register("s1", handle)
            active = registry.session_ids()
            await registry.release("s1")
            return registry, handle, active

        registry, handle, active = run_async(scenario())
        assert active == ["s1"]
        assert registry.active_count() == 0
        assert handle.kill_calls == 1
        assert counts == [1, 0]
        assert not registry.was_cancelled("s1")

    def test_duplicate_session(self):
        async def scenario():
            registry = SandboxRegistry()
            await registry.register("s1", FakeSandbox("a"))
            await registry.register("s1", FakeSandbox("b"))

        with pytest.raises(SessionAlreadyRegisteredError):
            run_async(scenario())

    def test_kill_marks_cancelled(self):
        async def scenario():
            registry = SandboxRegistry()
            await registry.register("s1", FakeSandbox())
            killed = await registry.kill("s1")
            missing = await registry.kill("s1")
            return registry, killed, missing

        registry, killed, missing = run_async(scenario())
        assert killed is True
        assert missing is False
        assert registry.was_cancelled("s1")
        registry.forget("s1")
        assert not registry.was_cancelled("s1")

    def test_release_after_kill_is_safe(self):
        async def scenario():
            registry = SandboxRegistry()
            handle = FakeSandbox()
            await registry.register("s1", handle)
            await registry.kill("s1")
            await registry.release("s1")
            return handle

        assert run_async(scenario()).kill_calls == 1

    def test_teardown_failure_still_removes_entry(self):
        async def scenario():
            registry = SandboxRegistry()
            await registry.register("ok", FakeSandbox("a"))
            await registry.register("bad", FakeSandbox("b", fail_kill=True))
            killed = await registry.kill_all()
            return registry, killed

        registry, killed = run_async(scenario())
        assert killed == 1
        assert registry.active_count() == 0


@settings(max_examples=100, deadline=None)
@given(
    session_ids=st.lists(
        st.text(alphabet="abcdef0123456789", min_size=1, max_size=8),
        max_size=12,
        unique=True,
    ),
    failing=st.data(),
)
def test_kill_all_empties_registry(session_ids, failing):
    """kill_all always leaves zero active sessions and reports clean kills."""
    flags = [failing.draw(st.booleans()) for _ in session_ids]

    async def scenario():
        registry = SandboxRegistry()
        handles = []
        for session_id, fail in zip(session_ids, flags):
            handle = FakeSandbox(f"sbx-{session_id}", fail_kill=fail)
            handles.append(handle)
            await registry.register(session_id, handle)
        killed = await registry.kill_all()
        return registry, handles, killed

    registry, handles, killed = run_async(scenario())
    assert registry.active_count() == 0
    assert killed == flags.count(False)
    assert all(h.kill_calls == 1 for h in handles)
    assert all(registry.was_cancelled(s) for s in session_ids)
