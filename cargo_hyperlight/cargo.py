from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
import os
import shlex
import shutil
import subprocess

from returns.io import IOFailure, IOResultE, IOSuccess

from cargo_hyperlight import env
from cargo_hyperlight.env import EnvironmentOverlay
from cargo_hyperlight.errors import CommandFailed, ProcessLaunchFailed, ToolNotFound
from cargo_hyperlight.types import Cmd, Env, EnvValue

RUSTUP_TOOLCHAIN = "RUSTUP_TOOLCHAIN"


@dataclass(frozen=True)
class CheckedOutput:
    stdout: str
    stderr: str


class Invocation:
    """A subprocess builder tracking explicit environment entries over a base snapshot."""

    def __init__(self, program: str | Path, inherited: Mapping[str, str] | None = None):
        self.program = str(program)
        self.arguments: list[str] = []
        self.overlay = EnvironmentOverlay()
        self.inherited: Env = dict(os.environ if inherited is None else inherited)
        self.cwd: Path | None = None

    def arg(self, arg: str | Path) -> "Invocation":
        self.arguments.append(str(arg))
        return self

    def args(self, args: Iterable[str | Path]) -> "Invocation":
        self.arguments.extend(map(str, args))
        return self

    def current_dir(self, directory: Path) -> "Invocation":
        self.cwd = Path(directory)
        return self

    def env(self, key: str, value: str | Path) -> "Invocation":
        self.overlay.set(key, str(value))
        return self

    def envs(self, envs: Mapping[str, str] | Iterable[tuple[str, str]]) -> "Invocation":
        for key, value in envs.items() if isinstance(envs, Mapping) else envs:
            self.env(key, value)
        return self

    def env_remove(self, key: str) -> "Invocation":
        self.overlay.unset(key)
        return self

    def env_clear(self) -> "Invocation":
        self.overlay.clear()
        return self

    def get_envs(self) -> tuple[tuple[str, EnvValue], ...]:
        return tuple(self.overlay.items())

    def resolve_env(self) -> Env:
        return self.overlay.resolve(self.inherited)

    def manifest_path(self, path: Path | None) -> "Invocation":
        if path is not None:
            self.arg("--manifest-path").arg(path)
        return self

    def target_dir(self, path: Path) -> "Invocation":
        return self.env("CARGO_BUILD_TARGET_DIR", path).env("CARGO_TARGET_DIR", path)

    def target(self, triplet: str) -> "Invocation":
        return self.env("CARGO_BUILD_TARGET", triplet)

    def cc_env(self, triplet: str, cc: str | Path) -> "Invocation":
        # CC_<triplet> has the highest priority for cc-rs, CLANG_PATH is read by bindgen
        return self.env(f"CC_{triplet}", cc).env("CLANG_PATH", cc)

    def ar_env(self, triplet: str, ar: str | Path) -> "Invocation":
        return self.env(f"AR_{triplet}", ar)

    def sysroot(self, path: Path) -> "Invocation":
        return self.append_rustflags(f"--sysroot={path}")

    def entrypoint(self, entry: str) -> "Invocation":
        return self.append_rustflags(f"-Clink-args=-e{entry}")

    def append_rustflags(self, flags: str) -> "Invocation":
        env.append_flags(self.overlay, self.inherited, env.RUSTFLAGS, flags)
        return self

    def append_cflags(self, triplet: str, flags: str) -> "Invocation":
        env.append_cflags(self.overlay, self.inherited, triplet, flags)
        return self

    def allow_unstable(self) -> "Invocation":
        return self.env("RUSTC_BOOTSTRAP", "1")

    @property
    def command(self) -> Cmd:
        return (self.program, *self.arguments)

    def describe(self) -> str:
        changes = " ".join(
            f"{key}={shlex.quote(value)}" if value is not None else f"-u {key}"
            for key, value in self.get_envs()
        )
        cwd = f"cd {shlex.quote(str(self.cwd))} && " if self.cwd else ""
        return f"{cwd}{changes + ' ' if changes else ''}{shlex.join(self.command)}"

    def __repr__(self) -> str:
        return self.describe()

    def _run(self, capture: bool) -> subprocess.CompletedProcess:
        return subprocess.run(
            self.command,
            env=self.resolve_env(),
            cwd=self.cwd,
            capture_output=capture,
            text=True,
            errors="replace",
        )

    def output(self) -> IOResultE[subprocess.CompletedProcess]:
        """Runs to completion capturing output, without checking the exit status."""
        try:
            return IOSuccess(self._run(capture=True))
        except OSError as e:
            error = ProcessLaunchFailed(self.describe())
            error.__cause__ = e
            return IOFailure(error)

    def _checked(self, capture: bool) -> IOResultE[CheckedOutput]:
        try:
            res = self._run(capture=capture)
        except OSError as e:
            error = ProcessLaunchFailed(self.describe())
            error.__cause__ = e
            return IOFailure(error)
        if res.returncode != 0:
            return IOFailure(
                CommandFailed(self.describe(), res.returncode, res.stderr or "")
            )
        return IOSuccess(CheckedOutput(stdout=res.stdout or "", stderr=res.stderr or ""))

    def checked_output(self) -> IOResultE[CheckedOutput]:
        return self._checked(capture=True)

    def checked_status(self) -> IOResultE[None]:
        return self._checked(capture=False).map(lambda _: None)


@dataclass(frozen=True)
class CargoBinary:
    path: Path
    rustup_toolchain: str | None = None

    def command(self, inherited: Mapping[str, str] | None = None) -> Invocation:
        cmd = Invocation(self.path, inherited)
        if self.rustup_toolchain is not None:
            cmd.env(RUSTUP_TOOLCHAIN, self.rustup_toolchain)
        return cmd


def find_cargo(environ: Mapping[str, str]) -> IOResultE[CargoBinary]:
    """Uses `CARGO` when set, otherwise `cargo` from the search path."""
    cargo = environ.get("CARGO") or shutil.which(
        "cargo", path=environ.get("PATH", os.defpath)
    )
    if cargo is None:
        return IOFailure(ToolNotFound("cargo"))
    return IOSuccess(
        CargoBinary(
            path=Path(cargo).resolve(),
            rustup_toolchain=environ.get(RUSTUP_TOOLCHAIN),
        )
    )
