from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class LanguageProfile:
    """How one language is compiled and run inside a sandbox.

    Commands are shell strings evaluated in the sandbox working directory,
    which holds `source_file` (and, after compilation, the build output).
    """

    language: str
    source_file: str
    run_cmd: str
    run_image: str
    compile_cmd: Optional[str] = None
    compile_image: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()

    @property
    def compiles(self) -> bool:
        return self.compile_cmd is not None

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.env)

    def describe(self) -> Dict[str, object]:
        return {
            "language": self.language,
            "aliases": list(self.aliases),
            "compiles": self.compiles,
            "source_file": self.source_file,
        }
