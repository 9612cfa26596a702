from __future__ import annotations
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from ..core.errors import UnknownLanguageError
from .base import LanguageProfile

BINARY_IMAGE = "debian:bookworm-slim"

DEFAULT_PROFILES = (
    LanguageProfile(
        language="python",
        aliases=("python3", "py"),
        source_file="main.py",
        run_cmd="python3 main.py",
        run_image="python:3-slim",
        env=(("PYTHONUNBUFFERED", "1"), ("PYTHONDONTWRITEBYTECODE", "1")),
    ),
    LanguageProfile(
        language="javascript",
        aliases=("js", "node"),
        source_file="main.js",
        run_cmd="node main.js",
        run_image="node:slim",
    ),
    LanguageProfile(
        language="ruby",
        aliases=("rb",),
        source_file="main.rb",
        run_cmd="ruby main.rb",
        run_image="ruby:slim",
    ),
    LanguageProfile(
        language="c",
        source_file="main.c",
        compile_cmd="gcc -O2 -static -o main main.c -lm",
        compile_image="gcc:latest",
        run_cmd="./main",
        run_image=BINARY_IMAGE,
    ),
    LanguageProfile(
        language="cpp",
        aliases=("c++",),
        source_file="main.cpp",
        compile_cmd="g++ -O2 -static -o main main.cpp",
        compile_image="gcc:latest",
        run_cmd="./main",
        run_image=BINARY_IMAGE,
    ),
    LanguageProfile(
        language="rust",
        aliases=("rs",),
        source_file="main.rs",
        compile_cmd="rustc -O -o main main.rs",
        compile_image="rust:latest",
        run_cmd="./main",
        run_image=BINARY_IMAGE,
    ),
    LanguageProfile(
        language="go",
        aliases=("golang",),
        source_file="main.go",
        compile_cmd="go build -o main main.go",
        compile_image="golang:latest",
        run_cmd="./main",
        run_image=BINARY_IMAGE,
        env=(("GOCACHE", "/tmp/go-build"), ("GOPATH", "/tmp/go"), ("CGO_ENABLED", "0")),
    ),
    LanguageProfile(
        language="java",
        source_file="Main.java",
        compile_cmd="javac Main.java",
        compile_image="eclipse-temurin:25",
        run_cmd="java -cp . Main",
        run_image="eclipse-temurin:25",
    ),
)


class LanguageRegistry:
    """Immutable lookup of language profiles by name or alias."""

    def __init__(self, profiles: Iterable[LanguageProfile]):
        by_name: Dict[str, LanguageProfile] = {}
        lookup: Dict[str, LanguageProfile] = {}
        for profile in profiles:
            key = profile.language.lower()
            if key in by_name:
                raise ValueError(f"duplicate language profile: {profile.language}")
            by_name[key] = profile
        for key, profile in by_name.items():
            for name in (key, *profile.aliases):
                name = name.lower()
                if name in lookup and lookup[name] is not profile:
                    raise ValueError(f"language alias {name!r} is ambiguous")
                lookup[name] = profile
        self._profiles: Mapping[str, LanguageProfile] = MappingProxyType(by_name)
        self._lookup: Mapping[str, LanguageProfile] = MappingProxyType(lookup)

    def get(self, language: str) -> LanguageProfile:
        profile = self._lookup.get((language or "").strip().lower())
        if profile is None:
            raise UnknownLanguageError(f"unknown_language: {language}")
        return profile

    def __contains__(self, language: object) -> bool:
        return isinstance(language, str) and language.strip().lower() in self._lookup

    def languages(self) -> List[str]:
        return sorted(self._profiles)

    def profiles(self) -> List[LanguageProfile]:
        return [self._profiles[name] for name in self.languages()]

    def subset(self, languages: Optional[Iterable[str]]) -> "LanguageRegistry":
        if not languages:
            return self
        wanted = {self.get(name).language for name in languages}
        return LanguageRegistry(p for p in self.profiles() if p.language in wanted)


def _profile_from_mapping(language: str, raw: Dict[str, Any], base: Optional[LanguageProfile]) -> LanguageProfile:
    def pick(key: str, default: Any = None) -> Any:
        if key in raw:
            return raw[key]
        if base is not None:
            return getattr(base, key)
        return default

    run_cmd = pick("run_cmd")
    run_image = pick("run_image", "")
    source_file = pick("source_file")
    if not run_cmd or not source_file:
        raise ValueError(f"language {language!r}: `run_cmd` and `source_file` are required")
    env = pick("env", ())
    if isinstance(env, dict):
        env = tuple((str(k), str(v)) for k, v in env.items())
    return LanguageProfile(
        language=language,
        source_file=str(source_file),
        run_cmd=str(run_cmd),
        run_image=str(run_image or ""),
        compile_cmd=pick("compile_cmd"),
        compile_image=pick("compile_image"),
        aliases=tuple(str(a).lower() for a in pick("aliases", ()) or ()),
        env=tuple(env),
    )


def load_registry(languages_file: Optional[Path] = None) -> LanguageRegistry:
    """Built-in profiles, optionally overridden or extended from YAML.

    The file maps language name -> profile fields; fields left out keep the
    built-in value, `null` clears optional ones (e.g. `compile_cmd`).
    """
    profiles = {p.language: p for p in DEFAULT_PROFILES}
    if languages_file is None:
        return LanguageRegistry(profiles.values())

    raw = yaml.safe_load(Path(languages_file).read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{languages_file}: languages file must map names to profiles")
    for name, body in raw.items():
        if not isinstance(body, dict):
            raise ValueError(f"{languages_file}: `{name}` must be a mapping")
        language = str(name).lower()
        profiles[language] = _profile_from_mapping(language, body, profiles.get(language))
    return LanguageRegistry(profiles.values())
