from __future__ import annotations
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional
import io, tarfile, time

import docker
import requests
import structlog
from docker.errors import DockerException

from ..core.utils import truncate_bytes
from .base import ExecResult, ExecSpec, Executor

log = structlog.get_logger(component="docker_executor")

SANDBOX_DIR = "/sandbox"
STDIN_FILE = ".stdin"


def _reset_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def pack_workspace(workdir: Path, stdin: bytes) -> bytes:
    """Tar `workdir` as sandbox/... with the stdin file alongside."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.add(str(workdir), arcname=PurePosixPath(SANDBOX_DIR).name, filter=_reset_owner)
        info = tarfile.TarInfo(f"{PurePosixPath(SANDBOX_DIR).name}/{STDIN_FILE}")
        info.size = len(stdin)
        info.mtime = int(time.time())
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(stdin))
    return buf.getvalue()


def unpack_sandbox(chunks: Iterable[bytes], dest: Path) -> None:
    """Extract a `get_archive(SANDBOX_DIR)` stream into `dest`, dropping the top directory."""
    buf = io.BytesIO(b"".join(chunks))
    dest = dest.resolve()
    with tarfile.open(fileobj=buf, mode="r") as tar:
        for member in tar.getmembers():
            parts = PurePosixPath(member.name).parts[1:]
            if not parts or parts == (STDIN_FILE,):
                continue
            if member.name.startswith("/") or ".." in parts:
                raise ValueError(f"unsafe path in archive: {member.name}")
            if not (member.isfile() or member.isdir()):
                continue
            target = dest.joinpath(*parts)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, open(target, "wb") as out:
                out.write(src.read())
            target.chmod(member.mode & 0o755)


class DockerExecutor(Executor):
    """One throw-away container per attempt; the workspace is copied in with put_archive."""

    name = "docker"

    def __init__(self, *, base_url: Optional[str] = None, cpus: float = 1.0, client=None, kill_grace_s: float = 2.0):
        self.base_url = base_url
        self.cpus = cpus
        self.kill_grace_s = kill_grace_s
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.DockerClient(base_url=self.base_url) if self.base_url else docker.from_env()
        return self._client

    def _create(self, spec: ExecSpec):
        return self.client.containers.create(
            spec.image,
            command=["sh", "-c", f"{spec.cmd} < {SANDBOX_DIR}/{STDIN_FILE}"],
            working_dir=SANDBOX_DIR,
            environment=dict(spec.env),
            network_disabled=True,
            mem_limit=spec.memory_bytes,
            memswap_limit=spec.memory_bytes,
            pids_limit=spec.pids_limit,
            nano_cpus=int(self.cpus * 1_000_000_000),
            security_opt=["no-new-privileges"],
            detach=True,
        )

    @staticmethod
    def _logs(container, *, stdout: bool, limit: int) -> bytes:
        data = container.logs(stdout=stdout, stderr=not stdout)
        return truncate_bytes(data, limit)

    def run(self, spec: ExecSpec) -> ExecResult:
        container = None
        started = time.monotonic()
        try:
            container = self._create(spec)
            container.put_archive("/", pack_workspace(spec.workdir, spec.stdin))
            timed_out = False
            started = time.monotonic()
            container.start()
            try:
                container.wait(timeout=spec.timeout_s)
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError):
                timed_out = True
                container.kill()
                container.wait(timeout=self.kill_grace_s)
            duration_ms = int((time.monotonic() - started) * 1000)

            container.reload()
            state = container.attrs.get("State", {})
            exit_code = state.get("ExitCode")
            oom = bool(state.get("OOMKilled"))
            sig = exit_code - 128 if isinstance(exit_code, int) and exit_code > 128 else None

            stdout = self._logs(container, stdout=True, limit=spec.output_limit)
            stderr = self._logs(container, stdout=False, limit=spec.output_limit)

            if spec.export_to is not None and not timed_out:
                chunks, _stat = container.get_archive(SANDBOX_DIR)
                unpack_sandbox(chunks, spec.export_to)

            return ExecResult(
                exit_code=exit_code,
                signal=sig,
                stdout=stdout,
                stderr=stderr,
                duration_ms=duration_ms,
                peak_memory_mb=None,
                timed_out=timed_out,
                oom_killed=oom,
            )
        except (DockerException, requests.exceptions.RequestException, OSError, ValueError, tarfile.TarError) as e:
            log.error("docker_exec_failed", image=spec.image, error=str(e))
            return ExecResult.internal(f"docker executor: {e}", int((time.monotonic() - started) * 1000))
        finally:
            if container is not None:
                try:
                    container.remove(force=True)
                except DockerException as e:
                    log.warning("container_remove_failed", error=str(e))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
