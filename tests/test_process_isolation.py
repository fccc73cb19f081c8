import threading

import pytest

from collabexec.core.errors import ExecutionError
from collabexec.executor import cgroups
from collabexec.executor import process
from collabexec.executor.base import SandboxContext
from collabexec.executor.process import ProcessExecutor, wrap_with_namespaces


def test_confined_by_default():
    assert ProcessExecutor().isolation == "namespaces"


def test_unconfined_mode_needs_explicit_opt_in():
    with pytest.raises(ValueError, match="allow_unsafe_isolation"):
        ProcessExecutor(isolation="none")
    assert ProcessExecutor(isolation="none", allow_unsafe=True).isolation == "none"


def test_unknown_isolation_mode_is_refused():
    with pytest.raises(ValueError):
        ProcessExecutor(isolation="chroot")


def test_namespace_wrapper_layout(monkeypatch, tmp_path):
    monkeypatch.setattr(process.shutil, "which", lambda name: f"/usr/bin/{name}")
    argv = wrap_with_namespaces(["python3", "main.py"], tmp_path)

    assert argv[0] == "/usr/bin/unshare"
    for flag in ("--user", "--net", "--mount", "--pid"):
        assert flag in argv
    sh = argv.index("/usr/bin/sh")
    assert argv[sh + 1] == "-c"
    assert "remount,bind,ro" in argv[sh + 2]
    assert argv[sh + 3:] == ["cxe-confine", str(tmp_path), "python3", "main.py"]


def test_namespace_wrapper_fails_closed_without_tools(monkeypatch, tmp_path):
    monkeypatch.setattr(process.shutil, "which", lambda name: None if name == "mount" else f"/usr/bin/{name}")
    with pytest.raises(ExecutionError) as exc:
        wrap_with_namespaces(["python3", "main.py"], tmp_path)
    assert exc.value.reason == "sandbox_unavailable"


@pytest.mark.asyncio
async def test_cgroup_teardown_runs_off_the_event_loop(monkeypatch, tmp_path):
    seen = []
    monkeypatch.setattr(cgroups, "read_metrics", lambda leaf: {})
    monkeypatch.setattr(cgroups, "teardown", lambda leaf: seen.append((leaf, threading.get_ident())))

    workdir = tmp_path / "work"
    workdir.mkdir()
    ctx = SandboxContext(execution_id="exec_1_x", workdir=workdir, extra={"cgroup": tmp_path / "leaf"})
    await ProcessExecutor().teardown(ctx)

    assert seen == [(tmp_path / "leaf", seen[0][1])]
    assert seen[0][1] != threading.get_ident()
    assert not workdir.exists()
