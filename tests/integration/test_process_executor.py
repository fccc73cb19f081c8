import asyncio
import sys
import time

import pytest

from collabexec.core.errors import ExecutionError, ExecutionTimeout
from collabexec.executor.base import ExecSpec
from collabexec.executor.process import ProcessExecutor
from collabexec.settings import DEFAULT_LANGUAGES

pytestmark = pytest.mark.skipif(sys.platform != "linux", reason="POSIX process sandbox")

# run under the interpreter executing the tests
PYTHON = DEFAULT_LANGUAGES["python"].model_copy(update={"run": [sys.executable, "-B", "{file}"]})


def alive(pid):
    """True while pid is a running process. Reaped or zombie counts as gone."""
    try:
        with open(f"/proc/{pid}/stat") as f:
            stat = f.read()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def make_spec(code, input="", timeout_ms=5000, output_max_lines=1000, policy=PYTHON):
    return ExecSpec(
        execution_id=f"exec_{int(time.time() * 1000)}_test",
        language="python",
        policy=policy,
        code=code,
        input=input,
        limits=policy.resource_limits(timeout_ms, output_max_lines),
    )


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch"


@pytest.fixture
def executor(scratch):
    return ProcessExecutor(isolation="none", allow_unsafe=True, scratch_root=scratch)


@pytest.mark.asyncio
async def test_runs_and_captures_output(executor, scratch):
    out = await executor.run(make_spec("import sys\nprint('ok')\nsys.stderr.write('warn\\n')\n"))
    assert out.exit_status == 0
    assert out.stdout == "ok"
    assert out.stderr == "warn"
    assert out.truncated is False
    # scratch directory is gone once the run is over
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_stdin_is_fed(executor):
    out = await executor.run(make_spec("print(input()[::-1])", input="abc"))
    assert out.stdout == "cba"


@pytest.mark.asyncio
async def test_non_zero_exit_and_signals(executor):
    assert (await executor.run(make_spec("import sys\nsys.exit(3)"))).exit_status == 3
    killed = await executor.run(make_spec("import os, signal\nos.kill(os.getpid(), signal.SIGKILL)"))
    assert killed.exit_status == 128 + 9


@pytest.mark.asyncio
async def test_output_is_bounded(executor):
    out = await executor.run(make_spec("for i in range(50):\n    print(i)", output_max_lines=10))
    assert out.truncated is True
    assert out.stdout.splitlines() == [str(i) for i in range(40, 50)]


@pytest.mark.asyncio
async def test_runs_in_private_scratch_dir(executor, scratch):
    out = await executor.run(make_spec("import os\nprint(os.getcwd())\nprint(sorted(os.listdir('.')))"))
    cwd, listing = out.stdout.splitlines()
    assert cwd.startswith(str(scratch))
    assert listing == "['main.py']"


@pytest.mark.asyncio
async def test_address_space_limit(executor):
    out = await executor.run(make_spec("x = bytearray(1024 * 1024 * 1024)\nprint('allocated')"))
    assert out.exit_status != 0
    assert "MemoryError" in out.stderr


@pytest.mark.asyncio
async def test_watchdog_kills_runaway_program(executor, scratch):
    code = "import os, sys\nprint(os.getpid(), flush=True)\nwhile True:\n    pass\n"
    start = time.monotonic()
    with pytest.raises(ExecutionTimeout) as exc:
        await executor.run(make_spec(code, timeout_ms=1000))
    elapsed = time.monotonic() - start

    assert 0.9 <= elapsed < 3.0
    assert exc.value.timeout_ms == 1000
    pid = int(exc.value.stdout.strip())
    assert not alive(pid)
    assert list(scratch.iterdir()) == []


@pytest.mark.asyncio
async def test_background_children_do_not_outlive_the_run(executor):
    code = (
        "import subprocess, sys\n"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print(p.pid, flush=True)\n"
    )
    start = time.monotonic()
    out = await executor.run(make_spec(code))
    assert time.monotonic() - start < 5
    child = int(out.stdout.strip())
    await asyncio.sleep(0.1)
    assert not alive(child)


@pytest.mark.asyncio
async def test_missing_interpreter_is_an_execution_error(executor, scratch):
    policy = PYTHON.model_copy(update={"run": ["/nonexistent/python", "{file}"]})
    with pytest.raises(ExecutionError):
        await executor.run(make_spec("print(1)", policy=policy))
    assert list(scratch.iterdir()) == []
