from __future__ import annotations
from pathlib import Path
from typing import Optional
import os, time

import structlog

CGROOT = Path("/sys/fs/cgroup")
CONTROLLERS = ("memory", "pids", "cpu")

log = structlog.get_logger(component="cgroups")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val and not (val == "max" and back.startswith("max")):
        raise RuntimeError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def ensure_v2(root: Path = CGROOT):
    if not (root / "cgroup.controllers").exists():
        raise RuntimeError("cgroup v2 is required")


def _enable_controllers(node: Path):
    """Enable memory/pids/cpu for the children of `node` (node must hold no PIDs)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    active = set((node / "cgroup.subtree_control").read_text().split())
    want = [f"+{c}" for c in CONTROLLERS if c in have and c not in active]
    if not want:
        return
    if node != CGROOT and (node / "cgroup.procs").read_text().strip():
        raise PermissionError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def prepare_base(base: Path) -> Path:
    """Create the delegation node under which one leaf per attempt is made."""
    ensure_v2()
    if not str(base).startswith(str(CGROOT)):
        raise ValueError(f"cgroup base must live under {CGROOT}, got {base}")
    base.mkdir(parents=True, exist_ok=True)
    _enable_controllers(base.parent)
    _enable_controllers(base)
    missing = [c for c in ("memory", "pids") if c not in (base / "cgroup.subtree_control").read_text().split()]
    if missing:
        raise RuntimeError(f"cgroup controllers not enabled at {base}: {missing}")
    return base


def create_leaf(base: Path, name: str) -> Path:
    leaf = base / name
    leaf.mkdir(parents=False, exist_ok=False)
    return leaf


def set_limits(leaf: Path, memory_bytes: int, pids_max: int, cpu_max: Optional[str] = None):
    _write_then_check(leaf / "memory.max", memory_bytes)
    try:
        _write_then_check(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # swap accounting disabled on this kernel
        pass
    _write_then_check(leaf / "memory.oom.group", 1)
    _write_then_check(leaf / "pids.max", pids_max)
    if cpu_max and (leaf / "cpu.max").exists():
        (leaf / "cpu.max").write_text(cpu_max)


def attach_self(leaf: Path):
    """Move the calling process into `leaf`. Safe to call from a preexec_fn."""
    fd = os.open(str(leaf / "cgroup.procs"), os.O_WRONLY)
    try:
        os.write(fd, b"0")
    finally:
        os.close(fd)


def _read_flat_keyed(p: Path) -> dict:
    out: dict[str, int] = {}
    try:
        for line in p.read_text().splitlines():
            key, _, value = line.partition(" ")
            if value.strip().isdigit():
                out[key] = int(value)
    except FileNotFoundError:
        pass
    return out


def oom_killed(leaf: Path) -> bool:
    events = _read_flat_keyed(leaf / "memory.events")
    return events.get("oom_kill", 0) > 0 or events.get("oom_group_kill", 0) > 0


def peak_memory_mb(leaf: Path) -> Optional[float]:
    # memory.peak needs kernel >= 5.19
    p = leaf / "memory.peak"
    try:
        return round(int(p.read_text().strip()) / (1024 * 1024), 2)
    except (FileNotFoundError, ValueError):
        return None


def kill_all(leaf: Path):
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        kill_file.write_text("1")


def teardown(leaf: Path, retries: int = 20):
    # rmdir only succeeds once every process has been reaped
    for _ in range(retries):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            kill_all(leaf)
            time.sleep(0.05)
    log.warning("cgroup_teardown_failed", leaf=str(leaf))
