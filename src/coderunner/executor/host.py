from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional
import os, shlex, shutil, signal, subprocess, tempfile, time, uuid

import structlog

from . import cgroups, namespaces
from .base import ExecResult, ExecSpec, Executor
from ..runner.rlimits import looks_like_allocation_failure, preexec

log = structlog.get_logger(component="host_executor")


def _read_capped(f, limit: int) -> bytes:
    f.seek(0)
    return f.read(limit)


def _signal_of(returncode: int) -> Optional[int]:
    if returncode < 0:
        return -returncode
    # a shell that did not exec its child reports 128+signo
    if returncode > 128:
        return returncode - 128
    return None


class HostExecutor(Executor):
    """
    Runs the local toolchains. Every attempt gets:
      - a fresh copy of the workspace under `scratch_dir`,
      - a cgroup v2 leaf (memory.max, swap off, pids.max) when `use_cgroups`,
      - a private network namespace via unshare when `isolate_network`,
      - its own session, killed as a group on timeout.
    Without cgroups RLIMIT_AS is the memory ceiling and MLE is inferred
    from the program's stderr.
    """

    name = "host"

    def __init__(
        self,
        scratch_dir: Path,
        *,
        use_cgroups: bool = True,
        cgroup_base: Path = Path("/sys/fs/cgroup/coderunner"),
        isolate_network: bool = True,
        kill_grace_s: float = 2.0,
        cpu_max: Optional[str] = "100000 100000",
    ):
        self.scratch_dir = Path(scratch_dir)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.kill_grace_s = kill_grace_s
        self.cpu_max = cpu_max
        self.cgroup_base: Optional[Path] = None
        if use_cgroups:
            try:
                self.cgroup_base = cgroups.prepare_base(Path(cgroup_base))
            except (OSError, RuntimeError, ValueError) as e:
                log.warning("cgroups_unavailable", error=str(e), fallback="rlimit_as")
        self.isolate_network = isolate_network and namespaces.network_isolation_available()
        if isolate_network and not self.isolate_network:
            log.warning("network_isolation_unavailable")

    # ---------- helpers ----------

    def _env(self, sandbox: Path, extra: Dict[str, str]) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(sandbox),
            "TMPDIR": str(sandbox),
            "LANG": "C.UTF-8",
        }
        env.update(extra)
        return env

    def _argv(self, cmd: str) -> List[str]:
        argv = ["/bin/sh", "-c", cmd]
        return namespaces.wrap_argv(argv) if self.isolate_network else argv

    @staticmethod
    def _missing_tool(cmd: str) -> Optional[str]:
        try:
            words = shlex.split(cmd)
        except ValueError:
            return None
        if not words or "/" in words[0]:
            return None
        return None if shutil.which(words[0]) else words[0]

    @staticmethod
    def _kill_group(pid: int):
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    # ---------- run ----------

    def run(self, spec: ExecSpec) -> ExecResult:
        missing = self._missing_tool(spec.cmd)
        if missing:
            return ExecResult.internal(f"toolchain not found: {missing}")

        started = time.monotonic()
        sandbox = Path(tempfile.mkdtemp(prefix="sbx-", dir=self.scratch_dir))
        leaf: Optional[Path] = None
        proc: Optional[subprocess.Popen] = None
        try:
            shutil.copytree(spec.workdir, sandbox, dirs_exist_ok=True)
            if self.cgroup_base is not None:
                leaf = cgroups.create_leaf(self.cgroup_base, f"run-{uuid.uuid4().hex[:12]}")
                cgroups.set_limits(leaf, spec.memory_bytes, spec.pids_limit, self.cpu_max)

            attach = (lambda: cgroups.attach_self(leaf)) if leaf is not None else None
            rlimit_mem = None if leaf is not None else spec.memory_bytes

            with tempfile.TemporaryFile() as fin, tempfile.TemporaryFile() as fout, tempfile.TemporaryFile() as ferr:
                fin.write(spec.stdin)
                fin.seek(0)
                timed_out = False
                started = time.monotonic()
                proc = subprocess.Popen(
                    self._argv(spec.cmd),
                    stdin=fin,
                    stdout=fout,
                    stderr=ferr,
                    cwd=str(sandbox),
                    env=self._env(sandbox, spec.env),
                    preexec_fn=preexec(rlimit_mem, attach),
                )
                try:
                    returncode = proc.wait(timeout=spec.timeout_s)
                except subprocess.TimeoutExpired:
                    timed_out = True
                    self._kill_group(proc.pid)
                    if leaf is not None:
                        cgroups.kill_all(leaf)
                    returncode = proc.wait(timeout=self.kill_grace_s)
                duration_ms = int((time.monotonic() - started) * 1000)
                # stray children of the program die with it
                self._kill_group(proc.pid)

                stdout = _read_capped(fout, spec.output_limit)
                stderr = _read_capped(ferr, spec.output_limit)

            oom = False
            peak = None
            if leaf is not None:
                oom = cgroups.oom_killed(leaf)
                peak = cgroups.peak_memory_mb(leaf)
            elif returncode != 0 and not timed_out:
                oom = looks_like_allocation_failure(stderr)

            if spec.export_to is not None:
                shutil.copytree(sandbox, spec.export_to, dirs_exist_ok=True)

            sig = _signal_of(returncode)
            return ExecResult(
                exit_code=returncode if returncode >= 0 else 128 + (sig or 0),
                signal=sig,
                stdout=stdout,
                stderr=stderr,
                duration_ms=duration_ms,
                peak_memory_mb=peak,
                timed_out=timed_out,
                oom_killed=oom,
            )
        except (OSError, RuntimeError, ValueError, subprocess.SubprocessError) as e:
            log.error("host_exec_failed", error=str(e), cmd=spec.cmd)
            return ExecResult.internal(f"host executor: {e}", int((time.monotonic() - started) * 1000))
        finally:
            if proc is not None and proc.poll() is None:
                self._kill_group(proc.pid)
                try:
                    proc.wait(timeout=self.kill_grace_s)
                except subprocess.TimeoutExpired:
                    log.error("process_unkillable", pid=proc.pid)
            if leaf is not None:
                cgroups.teardown(leaf)
            shutil.rmtree(sandbox, ignore_errors=True)
