from __future__ import annotations
from typing import Callable, Optional
import os
import resource

STACK_BYTES = 64 * 1024 * 1024
NOFILE = 256

# stderr markers of a failed allocation when RLIMIT_AS is the only memory ceiling
ALLOCATION_FAILURE_MARKERS = (
    b"MemoryError",
    b"std::bad_alloc",
    b"out of memory",
    b"Cannot allocate memory",
    b"memory allocation of",
    b"OutOfMemoryError",
    b"JavaScript heap out of memory",
    b"failed to allocate memory",
)


def _setrlimit(kind: int, value: int) -> None:
    soft, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    try:
        resource.setrlimit(kind, (value, value))
    except (ValueError, OSError):
        # unsupported on this platform: keep the inherited limit
        pass


def apply_rlimits(memory_bytes: Optional[int], nofile: int = NOFILE) -> None:
    """Per-process ceilings for the sandboxed program.

    `memory_bytes` sets RLIMIT_AS and is only passed when cgroups are off.
    """
    _setrlimit(resource.RLIMIT_CORE, 0)
    _setrlimit(resource.RLIMIT_STACK, STACK_BYTES)
    _setrlimit(resource.RLIMIT_NOFILE, nofile)
    if memory_bytes:
        _setrlimit(resource.RLIMIT_AS, memory_bytes)


def preexec(memory_bytes: Optional[int], attach: Optional[Callable[[], None]] = None) -> Callable[[], None]:
    """Build the preexec_fn: new session, cgroup attach, then rlimits."""

    def _fn():
        os.setsid()
        if attach is not None:
            attach()
        apply_rlimits(memory_bytes)

    return _fn


def looks_like_allocation_failure(stderr: bytes) -> bool:
    return any(marker in stderr for marker in ALLOCATION_FAILURE_MARKERS)
