import textwrap
import time

import pytest

from coderunner.core.models import Limits, Outcome, TestCase
from coderunner.executor.base import ExecSpec
from coderunner.executor.host import HostExecutor
from coderunner.runner.sandbox import SandboxRunner
from coderunner.runners.registry import load_registry


@pytest.fixture
def executor(tmp_path, python3):
    return HostExecutor(tmp_path / "sbx", use_cgroups=False, isolate_network=False, kill_grace_s=1.0)


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def _spec(workspace, source, **kw):
    (workspace / "main.py").write_text(textwrap.dedent(source))
    kw.setdefault("timeout_ms", 5000)
    kw.setdefault("memory_mb", 256)
    return ExecSpec(cmd="python3 main.py", workdir=workspace, **kw)


def test_stdin_to_stdout(executor, workspace):
    res = executor.run(_spec(workspace, "print(int(input()) * 2)\n", stdin=b"21\n"))
    assert res.error is None
    assert res.exit_code == 0
    assert res.stdout == b"42\n"
    assert not res.timed_out and not res.oom_killed


def test_nonzero_exit_and_stderr(executor, workspace):
    res = executor.run(_spec(workspace, "import sys\nsys.stderr.write('boom')\nsys.exit(3)\n"))
    assert res.exit_code == 3
    assert res.stderr == b"boom"


def test_timeout_kills_process(executor, workspace):
    started = time.monotonic()
    res = executor.run(_spec(workspace, "while True:\n    pass\n", timeout_ms=300))
    assert res.timed_out
    assert time.monotonic() - started < 5
    assert res.duration_ms >= 300


def test_rlimit_memory_failure_is_flagged(executor, workspace):
    res = executor.run(_spec(workspace, "x = bytearray(1024 * 1024 * 1024)\n", memory_mb=128))
    assert res.exit_code != 0
    assert res.oom_killed


def test_sandbox_changes_do_not_leak_into_workspace(executor, workspace):
    res = executor.run(_spec(workspace, "open('junk.txt', 'w').write('x')\n"))
    assert res.exit_code == 0
    assert not (workspace / "junk.txt").exists()


def test_export_copies_sandbox_back(executor, workspace):
    (workspace / "main.py").write_text("")
    res = executor.run(ExecSpec(cmd="cp main.py built.txt", workdir=workspace, timeout_ms=5000, memory_mb=256, export_to=workspace))
    assert res.exit_code == 0
    assert (workspace / "built.txt").exists()


def test_output_is_capped(executor, workspace):
    res = executor.run(_spec(workspace, "print('x' * 10000)\n", output_limit=100))
    assert res.stdout == b"x" * 100


def test_missing_toolchain_is_internal(executor, workspace):
    res = executor.run(ExecSpec(cmd="definitely-not-a-compiler main.c", workdir=workspace, timeout_ms=1000, memory_mb=64))
    assert res.error is not None
    assert "definitely-not-a-compiler" in res.error


def test_scratch_dirs_are_removed(executor, workspace, tmp_path):
    executor.run(_spec(workspace, "print(1)\n"))
    assert list((tmp_path / "sbx").iterdir()) == []


def test_runner_verdicts_on_host(executor, workspace):
    runner = SandboxRunner(executor)
    python = load_registry().get("python")
    (workspace / "main.py").write_text("print(int(input()) * 2)\n")
    limits = Limits(time_limit_ms=5000, memory_limit_mb=256)

    ok = runner.run_test_case(python, workspace, TestCase("a", "2\n", "4\n"), limits)
    assert ok.outcome is Outcome.ACCEPTED
    assert ok.actual_output == "4\n"

    wrong = runner.run_test_case(python, workspace, TestCase("b", "2\n", "5\n"), limits)
    assert wrong.outcome is Outcome.WRONG_ANSWER

    crash = runner.run_test_case(python, workspace, TestCase("c", "nope\n", "0\n"), limits)
    assert crash.outcome is Outcome.RUNTIME_ERROR
    assert "ValueError" in crash.stderr
