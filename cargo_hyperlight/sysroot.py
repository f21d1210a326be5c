from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar
import json
import os
import re
import shutil
import sys

import toml
from returns.io import IOFailure, IOResultE, IOSuccess, impure_safe
from returns.iterables import Fold
from returns.pipeline import flow
from returns.pointfree import bind

from cargo_hyperlight.cargo import CargoBinary, Invocation
from cargo_hyperlight.errors import (
    FilesystemError,
    QueryFailed,
    SysrootBuildFailed,
    caused,
    context,
)
from cargo_hyperlight.target_spec import TargetSpec, build_target_spec, render_spec

T = TypeVar("T")

ArtifactSet = frozenset[Path]

SCRATCH_CRATE = "sysroot"
LIB_RS = """\
#![no_std]
"""

BUILD_STD = (
    "-Zbuild-std=core,alloc",
    "-Zbuild-std-features=compiler_builtins/mem",
)
ARTIFACT_SUFFIXES = (".rlib", ".rmeta")
WORKSPACE_WRAPPER = "RUSTC_WORKSPACE_WRAPPER"


class _SysrootConfig(Protocol):
    manifest_path: Path | None
    target: str
    env: dict[str, str]
    current_dir: Path
    cargo: CargoBinary

    @property
    def sysroot_dir(self) -> Path: ...

    @property
    def triplet_dir(self) -> Path: ...

    @property
    def build_dir(self) -> Path: ...

    @property
    def libs_dir(self) -> Path: ...

    @property
    def crate_dir(self) -> Path: ...

    @property
    def build_plan_dir(self) -> Path: ...

    @property
    def lock_file(self) -> Path: ...


def display(message: str) -> None:
    print(f"  \033[93m[SYSROOT]\033[0m {message}", file=sys.stderr)


def _fs(op: str, path: Path, action: Callable[[], T]) -> IOResultE[T]:
    return impure_safe(action)().alt(lambda e: caused(FilesystemError(op, path), e))


def _write_file(path: Path, content: str) -> IOResultE[Path]:
    def _write() -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(f".{path.name}.tmp")
        try:
            partial.write_text(content)
            os.replace(partial, path)
        finally:
            partial.unlink(missing_ok=True)
        return path

    return _fs("write", path, _write)


def _cargo(config: _SysrootConfig) -> Invocation:
    return config.cargo.command(config.env).current_dir(config.current_dir)


def cargo_version(config: _SysrootConfig) -> IOResultE[str]:
    def _parse(stdout: str) -> IOResultE[str]:
        match = re.search(r"(\d+\.\d+\.\d+)", stdout)
        if match is None:
            return IOFailure(QueryFailed(f"Unrecognized cargo version: {stdout!r}"))
        return IOSuccess(match.group(1))

    return (
        _cargo(config)
        .arg("--version")
        .checked_output()
        .alt(lambda e: caused(QueryFailed("Failed to get cargo version"), e))
        .bind(lambda output: _parse(output.stdout))
    )


def scratch_manifest(version: str) -> str:
    return toml.dumps(
        {
            "package": {
                "name": SCRATCH_CRATE,
                "version": "0.0.0",
                "edition": "2021",
                # the exact running version avoids spurious rust-version mismatches
                "rust-version": version,
                "publish": False,
            },
            "lib": {"path": "lib.rs"},
            "profile": {
                "dev": {"panic": "abort"},
                "release": {"panic": "abort"},
            },
            "workspace": {},
        }
    )


def materialize_crate(config: _SysrootConfig, version: str) -> IOResultE[Path]:
    return (
        _write_file(config.crate_dir / "Cargo.toml", scratch_manifest(version))
        .bind(lambda _: _write_file(config.crate_dir / "lib.rs", LIB_RS))
        .map(lambda _: config.crate_dir)
        .alt(context("while writing the sysroot crate"))
    )


def write_target_descriptor(config: _SysrootConfig, spec: TargetSpec) -> IOResultE[Path]:
    return _write_file(config.triplet_dir / "target.json", render_spec(spec)).alt(
        context("while writing the target descriptor")
    )


def ensure_rust_src(config: _SysrootConfig) -> IOResultE[None]:
    """Best effort: some toolchains ship the sources without rustup."""
    toolchain = config.env.get("RUSTUP_TOOLCHAIN")
    if toolchain is None:
        return IOSuccess(None)

    def _warn(error: Exception) -> IOResultE[None]:
        print(
            f"\033[93mwarning\033[0m: could not install rust-src for '{toolchain}': "
            f"{str(error).splitlines()[0]}",
            file=sys.stderr,
        )
        return IOSuccess(None)

    return (
        Invocation("rustup", config.env)
        .args(("component", "add", "rust-src", "--toolchain", toolchain))
        .checked_output()
        .map(lambda _: None)
        .lash(_warn)
    )


def _std_build(config: _SysrootConfig) -> Invocation:
    return (
        _cargo(config)
        .arg("build")
        .args(BUILD_STD)
        .args(("--target", config.target, "--release"))
        .args(("--target-dir", config.build_dir))
        .manifest_path(config.crate_dir / "Cargo.toml")
        .allow_unstable()
        .env_remove(WORKSPACE_WRAPPER)
        .sysroot(config.sysroot_dir)
    )


def _plan_records(stdout: str) -> list[Any]:
    try:
        return [json.loads(stdout)]
    except json.JSONDecodeError:
        return [json.loads(line) for line in stdout.splitlines() if line.strip()]


def _plan_outputs(record: Any) -> Iterator[str]:
    match record:
        case {"invocations": list(invocations)}:
            for invocation in invocations:
                yield from _plan_outputs(invocation)
        case {"outputs": list(outputs)}:
            yield from (output for output in outputs if isinstance(output, str))
        case _:
            pass


def _is_exported(file: Path) -> bool:
    return (
        file.suffix in ARTIFACT_SUFFIXES
        and file.stem.split("-", 1)[0] != f"lib{SCRATCH_CRATE}"
    )


def filter_artifacts(outputs: Iterable[str]) -> ArtifactSet:
    return frozenset(filter(_is_exported, map(Path, outputs)))


def parse_build_plan(stdout: str) -> IOResultE[ArtifactSet]:
    return (
        impure_safe(_plan_records)(stdout)
        .alt(lambda e: caused(QueryFailed("Failed to parse the sysroot build plan"), e))
        .map(
            lambda records: filter_artifacts(
                output for record in records for output in _plan_outputs(record)
            )
        )
        .bind(
            lambda artifacts: IOSuccess(artifacts)
            if artifacts
            else IOFailure(QueryFailed("The sysroot build plan lists no libraries"))
        )
    )


def expected_artifacts(config: _SysrootConfig) -> IOResultE[ArtifactSet]:
    plan = config.build_plan_dir / "build-plan.json"
    return (
        _std_build(config)
        .args(("-Zunstable-options", "--build-plan"))
        .checked_output()
        .alt(
            lambda e: caused(
                QueryFailed(
                    "Failed to get the sysroot build plan", getattr(e, "stderr", "")
                ),
                e,
            )
        )
        .bind(lambda output: _write_file(plan, output.stdout).map(lambda _: output))
        .bind(lambda output: parse_build_plan(output.stdout))
        .alt(context("while determining the sysroot artifacts"))
    )


def all_present(artifacts: ArtifactSet) -> bool:
    return all(artifact.is_file() for artifact in artifacts)


def build_libraries(config: _SysrootConfig) -> IOResultE[None]:
    display(f"building core, alloc for {config.target}")
    return (
        _std_build(config)
        .checked_status()
        .alt(lambda e: caused(SysrootBuildFailed(getattr(e, "description", "")), e))
    )


def _remove(path: Path) -> IOResultE[Path]:
    def _inner() -> Path:
        display(f"removing stale '{path.name}'")
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return path

    return _fs("remove", path, _inner)


def _copy(artifact: Path, libs_dir: Path) -> IOResultE[Path]:
    destination = libs_dir / artifact.name
    if destination.exists():
        return IOSuccess(destination)

    def _inner() -> Path:
        display(f"copying '{artifact.name}'")
        partial = libs_dir / f".{artifact.name}.tmp"
        shutil.copy2(artifact, partial)
        os.replace(partial, destination)
        return destination

    return _fs("copy", artifact, _inner)


def prune_stale(libs_dir: Path, artifacts: ArtifactSet) -> IOResultE[tuple[Path, ...]]:
    names = {artifact.name for artifact in artifacts}
    return _fs("read", libs_dir, lambda: sorted(libs_dir.iterdir())).bind(
        lambda entries: Fold.collect(
            tuple(_remove(entry) for entry in entries if entry.name not in names),
            IOResultE.from_value(()),
        )
    )


def sync_libs(libs_dir: Path, artifacts: ArtifactSet) -> IOResultE[tuple[Path, ...]]:
    return (
        _fs("create", libs_dir, lambda: libs_dir.mkdir(parents=True, exist_ok=True))
        .bind(lambda _: prune_stale(libs_dir, artifacts))
        .bind(
            lambda _: Fold.collect(
                tuple(_copy(artifact, libs_dir) for artifact in sorted(artifacts)),
                IOResultE.from_value(()),
            )
        )
        .alt(context("while synchronizing the sysroot libraries"))
    )


def _lock(f) -> None:
    if os.name == "posix":
        import fcntl

        fcntl.flock(f, fcntl.LOCK_EX)
    else:
        import msvcrt

        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_LOCK, 1)


def _unlock(f) -> None:
    if os.name == "posix":
        import fcntl

        fcntl.flock(f, fcntl.LOCK_UN)
    else:
        import msvcrt

        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)


@contextmanager
def sysroot_lock(lock_file: Path):
    """Exclusive lock shared by every invocation using the same sysroot."""
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+") as f:
        _lock(f)
        try:
            yield
        finally:
            _unlock(f)


def _build_if_missing(config: _SysrootConfig, artifacts: ArtifactSet) -> IOResultE[ArtifactSet]:
    if all_present(artifacts):
        display(f"core, alloc for {config.target} are up to date")
        return IOSuccess(artifacts)
    return build_libraries(config).map(lambda _: artifacts)


def synchronize(config: _SysrootConfig) -> IOResultE[tuple[Path, ...]]:
    return flow(
        expected_artifacts(config),
        bind(lambda artifacts: _build_if_missing(config, artifacts)),
        bind(lambda artifacts: sync_libs(config.libs_dir, artifacts)),
    )


def _materialize(config: _SysrootConfig, spec: TargetSpec) -> IOResultE[Path]:
    return (
        cargo_version(config)
        .bind(lambda version: materialize_crate(config, version))
        .bind(lambda _: write_target_descriptor(config, spec))
    )


def _prepare_locked(config: _SysrootConfig, spec: TargetSpec) -> IOResultE[tuple[Path, ...]]:
    try:
        with sysroot_lock(config.lock_file):
            return flow(
                _materialize(config, spec),
                bind(lambda _: ensure_rust_src(config)),
                bind(lambda _: synchronize(config)),
            )
    except OSError as e:
        return IOFailure(caused(FilesystemError("lock", config.lock_file), e))


def build(config: _SysrootConfig) -> IOResultE[Path]:
    return (
        build_target_spec(config)
        .bind(lambda spec: _prepare_locked(config, spec))
        .map(lambda _: config.sysroot_dir)
    )
