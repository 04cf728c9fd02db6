"""
Per-language catalogue: entry-point rule, build step, run step and sandbox image.

The driver stays language-agnostic: everything it needs to know about a
language is looked up here from ``SubmissionBundle.language``. Built-in
profiles follow the stock runner images (``Solution.java`` compiled with
``javac`` and started with ``java Solution``, and so on) and can be replaced
per deployment from a YAML file::

    java:
      default_entry: Main.java
      image: eclipse-temurin:21-jdk-alpine
      build: ["javac", "{entry}"]
      run: ["java", "-cp", ".", "{stem}"]
"""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError, InvalidSubmission
from .models import Language, Limits, SubmissionBundle

_JAVA_IDENT = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
# abort() after the runtime reports the failed allocation
_SIGABRT_EXIT = 128 + 6


@dataclass(frozen=True)
class MemorySignature:
    """
    How a runtime reports running out of memory: a regex over the stderr
    tail plus the exit statuses it dies with. Both must hold, so a program
    cannot turn its own failure into a memory verdict by printing the text.
    """

    pattern: str
    exit_codes: Tuple[int, ...]

    def matches(self, stderr: bytes, exit_code: Optional[int]) -> bool:
        if exit_code not in self.exit_codes:
            return False
        tail = stderr[-8192:].decode("utf-8", errors="replace").rstrip()
        return re.search(self.pattern, tail, re.MULTILINE) is not None


@dataclass(frozen=True)
class LanguageProfile:
    language: Language
    default_entry: str
    suffixes: Tuple[str, ...]
    run: Tuple[str, ...]
    build: Optional[Tuple[str, ...]] = None
    image: Optional[str] = None
    memory_signature: Optional[MemorySignature] = None
    # RLIMIT_AS breaks runtimes that reserve address space up front (JVM)
    limit_address_space: bool = True
    entry_must_match_class: bool = False

    def check_entry(self, bundle: SubmissionBundle) -> None:
        entry = bundle.entry_file
        if entry is None:
            raise InvalidSubmission(f"entry point {bundle.entry_point!r} is not among the source files")
        name = PurePosixPath(entry.path)
        if name.suffix not in self.suffixes:
            raise InvalidSubmission(
                f"{self.language.value} entry point must end with one of {', '.join(self.suffixes)}",
                {"entry_point": entry.path},
            )
        if self.entry_must_match_class:
            stem = name.stem
            if not _JAVA_IDENT.match(stem):
                raise InvalidSubmission(f"{stem!r} is not a valid class name", {"entry_point": entry.path})
            if not re.search(rf"\b(class|record|interface|enum)\s+{re.escape(stem)}\b", entry.content):
                raise InvalidSubmission(
                    f"entry point {entry.path} must declare class {stem}",
                    {"entry_point": entry.path},
                )

    def _expand(self, template: Iterable[str], bundle: SubmissionBundle, limits: Limits) -> List[str]:
        entry = bundle.entry_point or self.default_entry
        sources = [f.path for f in bundle.source_files if PurePosixPath(f.path).suffix in self.suffixes]
        values = {
            "entry": entry,
            "stem": PurePosixPath(entry).stem,
            "memory_mb": str(limits.memory_mb),
            "heap_mb": str(max(16, limits.memory_mb * 3 // 4)),
        }
        argv: List[str] = []
        for item in template:
            if item == "{sources}":
                argv.extend(sources)
            else:
                argv.append(item.format(**values))
        return argv

    def build_argv(self, bundle: SubmissionBundle, limits: Limits) -> Optional[List[str]]:
        if not self.build:
            return None
        return self._expand(self.build, bundle, limits)

    def run_argv(self, bundle: SubmissionBundle, limits: Limits) -> List[str]:
        return self._expand(self.run, bundle, limits)

    def summary(self) -> Dict[str, Any]:
        return {
            "language": self.language.value,
            "default_entry": self.default_entry,
            "suffixes": list(self.suffixes),
            "has_build_step": self.build is not None,
            "image": self.image,
        }


BUILTIN_PROFILES: Dict[Language, LanguageProfile] = {
    Language.JAVA: LanguageProfile(
        language=Language.JAVA,
        default_entry="Solution.java",
        suffixes=(".java",),
        image="eclipse-temurin:21-jdk-alpine",
        build=("javac", "-encoding", "UTF-8", "{sources}"),
        run=("java", "-Xmx{heap_mb}m", "-Xss64m", "-cp", ".", "{stem}"),
        memory_signature=MemorySignature(r"^Exception in thread \".*\" java\.lang\.OutOfMemoryError\b", (1,)),
        limit_address_space=False,
        entry_must_match_class=True,
    ),
    Language.CPP: LanguageProfile(
        language=Language.CPP,
        default_entry="solution.cpp",
        suffixes=(".cpp", ".cc", ".cxx"),
        image="gcc:13",
        build=("g++", "-O2", "-std=c++17", "-o", "solution", "{sources}"),
        run=("./solution",),
        memory_signature=MemorySignature(
            r"^terminate called after throwing an instance of 'std::bad_alloc'$", (_SIGABRT_EXIT,)),
    ),
    Language.C: LanguageProfile(
        language=Language.C,
        default_entry="solution.c",
        suffixes=(".c",),
        image="gcc:13",
        build=("gcc", "-O2", "-std=c11", "-o", "solution", "{sources}", "-lm"),
        run=("./solution",),
    ),
    Language.PYTHON: LanguageProfile(
        language=Language.PYTHON,
        default_entry="solution.py",
        suffixes=(".py",),
        image="python:3.12-slim",
        build=("python3", "-m", "py_compile", "{entry}"),
        run=("python3", "{entry}"),
        memory_signature=MemorySignature(
            r"^Traceback \(most recent call last\):$[\s\S]*^MemoryError(?:: .*)?\Z", (1,)),
    ),
    Language.JAVASCRIPT: LanguageProfile(
        language=Language.JAVASCRIPT,
        default_entry="solution.js",
        suffixes=(".js",),
        image="node:20-alpine",
        build=("node", "--check", "{entry}"),
        run=("node", "--max-old-space-size={heap_mb}", "{entry}"),
        memory_signature=MemorySignature(r"^FATAL ERROR: .*JavaScript heap out of memory", (_SIGABRT_EXIT,)),
        limit_address_space=False,
    ),
}


class LanguageCatalogue:
    def __init__(self, profiles: Optional[Mapping[Language, LanguageProfile]] = None):
        self._profiles: Dict[Language, LanguageProfile] = dict(BUILTIN_PROFILES if profiles is None else profiles)

    def get(self, language: Language) -> LanguageProfile:
        try:
            return self._profiles[Language(language)]
        except (KeyError, ValueError):
            raise InvalidSubmission(f"unsupported language: {language}") from None

    def languages(self) -> List[Language]:
        return list(self._profiles)

    def __contains__(self, language: object) -> bool:
        return language in self._profiles

    @classmethod
    def from_yaml(cls, path: Optional[Path]) -> "LanguageCatalogue":
        """Built-ins, with fields overridden by ``path`` when it exists."""
        profiles = dict(BUILTIN_PROFILES)
        if path is None or not Path(path).exists():
            return cls(profiles)
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid yaml in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must map language names to profiles")

        for name, raw in data.items():
            try:
                lang = Language(name)
            except ValueError:
                raise ConfigError(f"unknown language {name!r} in {path}") from None
            if raw is None:
                # explicit null disables the language
                profiles.pop(lang, None)
                continue
            if not isinstance(raw, dict):
                raise ConfigError(f"profile for {name} must be a mapping")
            profiles[lang] = _merge_profile(profiles.get(lang), lang, raw)
        return cls(profiles)


_TUPLE_FIELDS = ("suffixes", "run", "build")


def _merge_profile(base: Optional[LanguageProfile], lang: Language, raw: Dict[str, Any]) -> LanguageProfile:
    fields: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in LanguageProfile.__dataclass_fields__ or key == "language":
            raise ConfigError(f"unknown profile key {key!r} for {lang.value}")
        if key in _TUPLE_FIELDS and value is not None:
            value = tuple(str(v) for v in value)
        elif key == "memory_signature" and value is not None:
            value = _signature(lang, value)
        fields[key] = value
    if base is not None:
        return replace(base, **fields)
    missing = {"default_entry", "suffixes", "run"} - set(fields)
    if missing:
        raise ConfigError(f"profile for {lang.value} is missing {', '.join(sorted(missing))}")
    return LanguageProfile(language=lang, **fields)


def _signature(lang: Language, raw: Any) -> MemorySignature:
    """YAML form: ``{pattern: <regex>, exit_codes: [1]}``."""
    if not isinstance(raw, dict) or set(raw) != {"pattern", "exit_codes"}:
        raise ConfigError(f"memory_signature for {lang.value} needs exactly pattern and exit_codes")
    try:
        re.compile(raw["pattern"])
        codes = tuple(int(c) for c in raw["exit_codes"])
    except (re.error, TypeError, ValueError) as e:
        raise ConfigError(f"invalid memory_signature for {lang.value}: {e}") from e
    return MemorySignature(pattern=str(raw["pattern"]), exit_codes=codes)
