import io
import tarfile

import pytest
import requests
from docker.errors import ImageNotFound

from coderunner.executor.base import ExecSpec
from coderunner.executor.docker import DockerExecutor, pack_workspace, unpack_sandbox


class FakeContainer:
    def __init__(self, *, exit_code=0, oom=False, stdout=b"", stderr=b"", hang=False, archive=None):
        self.exit_code = exit_code
        self.oom = oom
        self.stdout = stdout
        self.stderr = stderr
        self.hang = hang
        self.archive = archive
        self.attrs = {}
        self.put = []
        self.killed = False
        self.removed = False
        self.started = False

    def put_archive(self, path, data):
        self.put.append((path, data))
        return True

    def start(self):
        self.started = True

    def wait(self, timeout=None):
        if self.hang and not self.killed:
            raise requests.exceptions.ReadTimeout("read timed out")
        return {"StatusCode": self.exit_code}

    def kill(self):
        self.killed = True
        self.exit_code = 137

    def reload(self):
        self.attrs = {"State": {"ExitCode": self.exit_code, "OOMKilled": self.oom}}

    def logs(self, stdout=True, stderr=True):
        return self.stdout if stdout else self.stderr

    def get_archive(self, path):
        return iter([self.archive]), {"name": "sandbox"}

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self, container=None, error=None):
        self.container = container
        self.error = error
        self.created = []

    def create(self, image, **kwargs):
        self.created.append((image, kwargs))
        if self.error:
            raise self.error
        return self.container


class FakeDocker:
    def __init__(self, containers):
        self.containers = containers
        self.closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "main.py").write_text("print(input())\n")
    return ws


def _spec(ws, **kw):
    kw.setdefault("timeout_ms", 1000)
    kw.setdefault("memory_mb", 64)
    return ExecSpec(cmd="python3 main.py", workdir=ws, image="python:3-slim", stdin=b"hi\n", **kw)


def test_container_settings(workspace):
    container = FakeContainer(stdout=b"hi\n")
    containers = FakeContainers(container)
    res = DockerExecutor(client=FakeDocker(containers), cpus=1.0).run(_spec(workspace, pids_limit=32))

    assert res.exit_code == 0 and res.stdout == b"hi\n"
    assert res.peak_memory_mb is None
    image, kw = containers.created[0]
    assert image == "python:3-slim"
    assert kw["command"] == ["sh", "-c", "python3 main.py < /sandbox/.stdin"]
    assert kw["network_disabled"] is True
    assert kw["mem_limit"] == kw["memswap_limit"] == 64 * 1024 * 1024
    assert kw["pids_limit"] == 32
    assert kw["nano_cpus"] == 1_000_000_000
    assert kw["security_opt"] == ["no-new-privileges"]
    assert container.removed


def test_workspace_and_stdin_are_copied_in(workspace):
    container = FakeContainer()
    DockerExecutor(client=FakeDocker(FakeContainers(container))).run(_spec(workspace))
    path, data = container.put[0]
    assert path == "/"
    with tarfile.open(fileobj=io.BytesIO(data)) as tar:
        names = set(tar.getnames())
        assert {"sandbox", "sandbox/main.py", "sandbox/.stdin"} <= names
        assert tar.extractfile("sandbox/.stdin").read() == b"hi\n"


def test_timeout_kills_container(workspace):
    container = FakeContainer(hang=True)
    res = DockerExecutor(client=FakeDocker(FakeContainers(container))).run(_spec(workspace))
    assert res.timed_out
    assert container.killed
    assert container.removed


def test_oom_and_signal(workspace):
    container = FakeContainer(exit_code=137, oom=True)
    res = DockerExecutor(client=FakeDocker(FakeContainers(container))).run(_spec(workspace))
    assert res.oom_killed
    assert res.signal == 9


def test_missing_image_is_internal(workspace):
    containers = FakeContainers(error=ImageNotFound("no such image: gcc:latest"))
    res = DockerExecutor(client=FakeDocker(containers)).run(_spec(workspace))
    assert res.error is not None
    assert "gcc:latest" in res.error


def _archive(entries):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def test_compile_exports_artifacts(workspace, tmp_path):
    container = FakeContainer(archive=_archive({"sandbox/main": b"\x7fELF", "sandbox/.stdin": b""}))
    out = tmp_path / "out"
    out.mkdir()
    DockerExecutor(client=FakeDocker(FakeContainers(container))).run(_spec(workspace, export_to=out))
    assert (out / "main").read_bytes() == b"\x7fELF"
    assert not (out / ".stdin").exists()


def test_unpack_rejects_traversal(tmp_path):
    with pytest.raises(ValueError):
        unpack_sandbox([_archive({"sandbox/../../etc/passwd": b"x"})], tmp_path)


def test_pack_resets_ownership(workspace):
    with tarfile.open(fileobj=io.BytesIO(pack_workspace(workspace, b""))) as tar:
        assert all(m.uid == 0 for m in tar.getmembers())


def test_close_closes_client():
    client = FakeDocker(FakeContainers())
    DockerExecutor(client=client).close()
    assert client.closed
