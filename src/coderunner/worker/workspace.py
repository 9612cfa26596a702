from __future__ import annotations
from pathlib import Path
import shutil


class WorkspaceStore:
    """
    Per-attempt job workspaces on the worker:
      <jobs_dir>/<job_id>-<attempt>/
        └─ <source_file>   (plus compile artifacts once compiled)
    Sandboxes copy from here; nothing runs in it directly.
    """

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, job_id: str, attempt: int) -> Path:
        return self.jobs_dir / f"{job_id}-{attempt}"

    def create(self, job_id: str, attempt: int, source_file: str, source_code: str) -> Path:
        p = self.path_for(job_id, attempt)
        if p.exists():
            shutil.rmtree(p)
        p.mkdir(parents=True)
        (p / source_file).write_text(source_code, encoding="utf-8")
        return p

    def remove(self, workspace: Path) -> None:
        shutil.rmtree(workspace, ignore_errors=True)

    def active(self) -> list[str]:
        return sorted(p.name for p in self.jobs_dir.iterdir() if p.is_dir())
