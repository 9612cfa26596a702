from __future__ import annotations
from functools import lru_cache
from typing import List
import shutil, subprocess

import structlog

log = structlog.get_logger(component="namespaces")

# unprivileged user namespace + empty network namespace (loopback down)
UNSHARE_ARGS = ["--user", "--map-root-user", "--net"]


def wrap_argv(argv: List[str]) -> List[str]:
    return ["unshare", *UNSHARE_ARGS, "--", *argv]


@lru_cache(maxsize=1)
def network_isolation_available() -> bool:
    """Probe once whether `unshare` may create the namespaces on this host."""
    if shutil.which("unshare") is None:
        log.warning("unshare_missing")
        return False
    try:
        proc = subprocess.run(
            wrap_argv(["true"]),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("unshare_probe_failed", error=str(e))
        return False
    if proc.returncode != 0:
        log.warning("unshare_probe_failed", rc=proc.returncode, stderr=proc.stderr.decode(errors="replace").strip())
        return False
    return True
