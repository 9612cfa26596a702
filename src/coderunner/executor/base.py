from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional


@dataclass
class ExecSpec:
    """One compile-or-run attempt.

    `workdir` is the job workspace; executors copy it into a fresh sandbox and
    never run in it directly. When `export_to` is set the sandbox contents are
    copied back there after the attempt (compile artifacts).
    """

    cmd: str
    workdir: Path
    timeout_ms: int
    memory_mb: int
    image: str = ""
    stdin: bytes = b""
    env: Dict[str, str] = field(default_factory=dict)
    pids_limit: int = 64
    output_limit: int = 16 * 1024 * 1024
    export_to: Optional[Path] = None

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def memory_bytes(self) -> int:
        return self.memory_mb * 1024 * 1024


@dataclass
class ExecResult:
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    stdout: bytes = b""
    stderr: bytes = b""
    duration_ms: int = 0
    peak_memory_mb: Optional[float] = None
    timed_out: bool = False
    oom_killed: bool = False
    # set when the sandbox itself failed (start error, missing image, ...)
    error: Optional[str] = None

    @classmethod
    def internal(cls, message: str, duration_ms: int = 0) -> "ExecResult":
        return cls(error=message, duration_ms=duration_ms)

    @property
    def failed(self) -> bool:
        return self.error is None and (bool(self.exit_code) or self.signal is not None)


class Executor:
    """Isolation backend. `run` must not raise: failures become `ExecResult.internal`."""

    name = "base"

    def run(self, spec: ExecSpec) -> ExecResult:
        raise NotImplementedError

    def close(self) -> None:
        pass
