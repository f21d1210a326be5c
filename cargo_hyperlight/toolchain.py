from collections.abc import Iterator, Mapping
from pathlib import Path
import os
import re
import shutil

from returns.io import IOFailure, IOResultE, IOSuccess
from returns.maybe import Maybe, Nothing, Some
from returns.pipeline import is_successful

from cargo_hyperlight.errors import ToolNotFound

CC_NAMES = ("clang",)
CC_VERSIONED = re.compile(r"clang-(\d+)")

AR_NAMES = ("ar", "llvm-ar")
AR_VERSIONED = re.compile(r"llvm-ar-(\d+)")

# --target and -U__linux__ let clang pick up the linux ABI without the linux headers
BASE_CFLAGS = (
    "-U__linux__",
    "-fno-stack-protector",
    "-fstack-clash-protection",
    "-mstack-probe-size=4096",
    "-mno-red-zone",
    "-nostdinc",
)


def _search_path(environ: Mapping[str, str]) -> str:
    return environ.get("PATH", os.defpath)


def _is_executable(file: Path) -> bool:
    return file.is_file() and os.access(file, os.X_OK)


def _versioned_candidates(directory: Path, pattern: re.Pattern) -> Iterator[Path]:
    try:
        entries = tuple(directory.iterdir())
    except OSError:
        return iter(())
    matches = (
        (int(m.group(1)), entry)
        for entry in entries
        if (m := pattern.fullmatch(entry.stem if os.name == "nt" else entry.name))
    )
    return (
        entry
        for _, entry in sorted(matches, key=lambda m: m[0], reverse=True)
        if _is_executable(entry)
    )


def which_versioned(pattern: re.Pattern, environ: Mapping[str, str]) -> Maybe[Path]:
    """First version-suffixed match in search-path order, highest version per directory."""
    for directory in filter(None, _search_path(environ).split(os.pathsep)):
        for candidate in _versioned_candidates(Path(directory), pattern):
            return Some(candidate)
    return Nothing


def which(names: tuple[str, ...], environ: Mapping[str, str]) -> Maybe[Path]:
    path = _search_path(environ)
    for name in names:
        if found := shutil.which(name, path=path):
            return Some(Path(found))
    return Nothing


def _find_tool(
    names: tuple[str, ...], versioned: re.Pattern, environ: Mapping[str, str]
) -> IOResultE[Path]:
    found = which(names, environ)
    if not is_successful(found):
        found = which_versioned(versioned, environ)
    return found.map(IOSuccess).value_or(IOFailure(ToolNotFound(names[0])))


def find_cc(environ: Mapping[str, str]) -> IOResultE[Path]:
    return _find_tool(CC_NAMES, CC_VERSIONED, environ)


def find_ar(environ: Mapping[str, str]) -> IOResultE[Path]:
    return _find_tool(AR_NAMES, AR_VERSIONED, environ)


def cflags(triplet: str, includes_dir: Path) -> str:
    arch, _, _ = triplet.partition("-")
    return " ".join(
        (
            f"--target={arch}-unknown-linux-none",
            *BASE_CFLAGS,
            "-isystem",
            str(includes_dir),
            "-fPIC",
        )
    )
