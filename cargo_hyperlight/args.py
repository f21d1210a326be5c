from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TypeVar
import argparse
import json
import platform
import sys

from returns.io import IOFailure, IOResultE, IOSuccess, impure_safe
from returns.unsafe import unsafe_perform_io

from cargo_hyperlight.cargo import CargoBinary, find_cargo
from cargo_hyperlight.errors import QueryFailed, UnsupportedTarget, caused, context
from cargo_hyperlight.toolchain import find_ar, find_cc
from cargo_hyperlight.types import Env, WarningLevel

T = TypeVar("T")

HYPERLIGHT_SUFFIX = "-hyperlight-none"
_MACHINES = {"amd64": "x86_64", "arm64": "aarch64"}


def host_arch() -> str:
    machine = platform.machine().lower()
    return _MACHINES.get(machine, machine)


DEFAULT_TARGET = f"{host_arch()}{HYPERLIGHT_SUFFIX}"


class ArgsConfig(Protocol):
    manifest_path: Path | None
    target_dir: Path | None
    target: str | None


@dataclass(frozen=True)
class Configuration:
    manifest_path: Path | None
    target_dir: Path
    target: str
    env: Env
    current_dir: Path
    cc: Path | None
    ar: Path | None
    cargo: CargoBinary

    @property
    def sysroot_dir(self) -> Path:
        return self.target_dir / "sysroot"

    @property
    def triplet_dir(self) -> Path:
        return self.sysroot_dir / "lib" / "rustlib" / self.target

    @property
    def build_dir(self) -> Path:
        return self.sysroot_dir / "target"

    @property
    def libs_dir(self) -> Path:
        return self.triplet_dir / "lib"

    @property
    def includes_dir(self) -> Path:
        return self.triplet_dir / "include"

    @property
    def crate_dir(self) -> Path:
        return self.sysroot_dir / "crate"

    @property
    def build_plan_dir(self) -> Path:
        return self.sysroot_dir / "build-plan"

    @property
    def lock_file(self) -> Path:
        return self.sysroot_dir / ".lock"


def warning(msg: str) -> None:
    print(f"\033[1;93mwarning\033[0m\033[1m: {msg}\033[0m", file=sys.stderr)


def args_parse(argv: Sequence[str]) -> tuple[ArgsConfig, list[str]]:
    """Picks the options the sysroot needs out of a cargo argument list.

    Everything after a `--` separator belongs to the program cargo runs.
    """
    argv = list(argv)
    split = argv.index("--") if "--" in argv else len(argv)
    parser = argparse.ArgumentParser(
        prog="cargo-hyperlight",
        add_help=False,
        allow_abbrev=False,
        exit_on_error=False,
    )
    parser.add_argument("--manifest-path", type=Path)
    parser.add_argument("--target-dir", type=Path)
    parser.add_argument("--target")

    args, rest = parser.parse_known_args(argv[:split])
    return args, rest + argv[split:]  # type: ignore


def with_fallback(
    warn: WarningLevel, msg: str, result: IOResultE[T], default: T
) -> IOResultE[T]:
    def _handle(error: Exception) -> IOResultE[T]:
        match warn:
            case "ignore":
                return IOSuccess(default)
            case "warn":
                warning(msg)
                warning(str(error).splitlines()[0] if str(error) else repr(error))
                warning(f"using {default}")
                return IOSuccess(default)
            case _:
                return IOFailure(context(msg)(error))

    return result.lash(_handle)


def resolve_target_dir(
    cargo: CargoBinary, manifest_path: Path | None, env: Env, cwd: Path
) -> IOResultE[Path]:
    return (
        cargo.command(env)
        .current_dir(cwd)
        .arg("metadata")
        .manifest_path(manifest_path)
        .args(("--format-version=1", "--no-deps"))
        .checked_output()
        .alt(
            lambda e: caused(
                QueryFailed("Failed to get cargo metadata", getattr(e, "stderr", "")), e
            )
        )
        .bind(
            lambda output: impure_safe(
                lambda: Path(json.loads(output.stdout)["target_directory"])
            )().alt(lambda e: caused(QueryFailed("Failed to parse cargo metadata"), e))
        )
    )


def resolve_target(cargo: CargoBinary, env: Env, cwd: Path) -> IOResultE[str]:
    # cargo exits with an error when build.target is not set, so the status is ignored
    return (
        cargo.command(env)
        .current_dir(cwd)
        .args(("config", "get", "--quiet", "--format=json-value"))
        .args(("-Zunstable-options", "build.target"))
        .allow_unstable()
        .output()
        .map(lambda res: (res.stdout or "").strip().strip("\"'"))
        .map(lambda target: target or DEFAULT_TARGET)
    )


def hyperlight_target(target: str, warn: WarningLevel) -> IOResultE[str]:
    if target.endswith(HYPERLIGHT_SUFFIX):
        return IOSuccess(target)
    arch, _, _ = target.partition("-")
    return with_fallback(
        warn,
        "requested target is not a hyperlight target",
        IOFailure(UnsupportedTarget(target)),
        f"{arch}{HYPERLIGHT_SUFFIX}",
    )


def _optional(result: IOResultE[Path]) -> Path | None:
    return unsafe_perform_io(result.value_or(None))


def _configuration(
    cargo: CargoBinary, args: ArgsConfig, env: Env, cwd: Path, warn: WarningLevel
) -> IOResultE[Configuration]:
    target_dir = (
        IOSuccess(args.target_dir)
        if args.target_dir is not None
        else with_fallback(
            warn,
            "could not resolve target directory",
            resolve_target_dir(cargo, args.manifest_path, env, cwd),
            cwd / "target",
        )
    )
    target = (
        IOSuccess(args.target)
        if args.target is not None
        else with_fallback(
            warn,
            "could not resolve target triple",
            resolve_target(cargo, env, cwd),
            DEFAULT_TARGET,
        )
    )
    return target_dir.bind(
        lambda directory: target.bind(lambda t: hyperlight_target(t, warn)).map(
            lambda triplet: Configuration(
                manifest_path=args.manifest_path,
                target_dir=cwd / directory,
                target=triplet,
                env=env,
                current_dir=cwd,
                cc=_optional(find_cc(env)),
                ar=_optional(find_ar(env)),
                cargo=cargo,
            )
        )
    )


def configuration_load(
    argv: Sequence[str],
    env: Mapping[str, str],
    cwd: Path | None = None,
    warn: WarningLevel = "warn",
    cargo: CargoBinary | None = None,
) -> IOResultE[Configuration]:
    environ = dict(env)
    directory = cwd if cwd is not None else Path.cwd()
    binary = IOSuccess(cargo) if cargo is not None else find_cargo(environ)
    return (
        impure_safe(args_parse)(argv)
        .bind(lambda parsed: binary.map(lambda found: (parsed[0], found)))
        .bind(
            lambda pair: _configuration(pair[1], pair[0], environ, directory, warn)
        )
        .alt(context("while resolving the build configuration"))
    )
