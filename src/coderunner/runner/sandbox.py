from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from ..core.models import Limits, Outcome, TestCase, Verdict
from ..core.utils import decode_output, tail_text
from ..executor.base import ExecSpec, Executor
from ..runners.base import LanguageProfile
from ..settings import Settings
from .classify import classify

log = structlog.get_logger(component="sandbox")


@dataclass(frozen=True)
class CompileResult:
    ok: bool
    output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    # set when the sandbox failed, not the compiler
    internal_error: Optional[str] = None


class SandboxRunner:
    """Compile once, run each test case in its own sandbox, classify."""

    def __init__(
        self,
        executor: Executor,
        *,
        compile_timeout_ms: int = 60000,
        compile_memory_mb: int = 512,
        pids_limit: int = 64,
        output_limit: int = 16 * 1024 * 1024,
    ):
        self.executor = executor
        self.compile_timeout_ms = compile_timeout_ms
        self.compile_memory_mb = compile_memory_mb
        self.pids_limit = pids_limit
        self.output_limit = output_limit

    @classmethod
    def from_settings(cls, settings: Settings, executor: Executor) -> "SandboxRunner":
        return cls(
            executor,
            compile_timeout_ms=settings.compile_timeout_ms,
            compile_memory_mb=settings.compile_memory_mb,
            pids_limit=settings.pids_limit,
            output_limit=settings.output_limit_bytes,
        )

    def compile(self, profile: LanguageProfile, workspace: Path) -> CompileResult:
        if not profile.compiles:
            return CompileResult(ok=True)
        spec = ExecSpec(
            cmd=profile.compile_cmd,
            workdir=workspace,
            image=profile.compile_image or profile.run_image,
            timeout_ms=self.compile_timeout_ms,
            memory_mb=self.compile_memory_mb,
            env=profile.environment,
            pids_limit=max(self.pids_limit, 256),
            output_limit=self.output_limit,
            export_to=workspace,
        )
        result = self.executor.run(spec)
        if result.error is not None:
            return CompileResult(ok=False, internal_error=result.error, duration_ms=result.duration_ms)

        output = tail_text(decode_output(result.stderr + result.stdout))
        if result.timed_out:
            output = (output + "\ncompilation timed out").strip()
        elif result.oom_killed:
            output = (output + "\ncompiler ran out of memory").strip()
        ok = not (result.timed_out or result.oom_killed or result.failed)
        log.info("compiled", language=profile.language, ok=ok, duration_ms=result.duration_ms)
        return CompileResult(ok=ok, output=output, exit_code=result.exit_code, duration_ms=result.duration_ms)

    def run_test_case(self, profile: LanguageProfile, workspace: Path, test_case: TestCase, limits: Limits) -> Verdict:
        """Never raises; sandbox failures come back as an internal_error verdict for the caller to retry."""
        spec = ExecSpec(
            cmd=profile.run_cmd,
            workdir=workspace,
            image=profile.run_image,
            timeout_ms=limits.time_limit_ms,
            memory_mb=limits.memory_limit_mb,
            stdin=test_case.input.encode("utf-8"),
            env=profile.environment,
            pids_limit=self.pids_limit,
            output_limit=self.output_limit,
        )
        result = self.executor.run(spec)
        outcome = classify(result, test_case.expected_output)
        if outcome is Outcome.INTERNAL_ERROR:
            return Verdict(
                test_case_id=test_case.id,
                outcome=outcome,
                duration_ms=result.duration_ms,
                stderr=result.error or "",
            )
        return Verdict(
            test_case_id=test_case.id,
            outcome=outcome,
            actual_output=decode_output(result.stdout),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            peak_memory_mb=result.peak_memory_mb,
            stderr=tail_text(decode_output(result.stderr)),
        )


def build_executor(settings: Settings) -> Executor:
    if settings.executor == "docker":
        from ..executor.docker import DockerExecutor

        return DockerExecutor(base_url=settings.docker_url, cpus=settings.docker_cpus, kill_grace_s=settings.kill_grace_s)
    if settings.executor == "host":
        from ..executor.host import HostExecutor

        return HostExecutor(
            settings.work_dir / "sandboxes",
            use_cgroups=settings.use_cgroups,
            cgroup_base=settings.cgroup_base,
            isolate_network=settings.isolate_network,
            kill_grace_s=settings.kill_grace_s,
        )
    raise ValueError(f"unknown executor: {settings.executor!r}")
