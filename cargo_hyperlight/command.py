from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import NoReturn
import copy
import os
import sys

from returns.io import IOResultE
from returns.pipeline import is_successful
from returns.unsafe import unsafe_perform_io

from cargo_hyperlight import sysroot
from cargo_hyperlight.args import Configuration, configuration_load
from cargo_hyperlight.cargo import RUSTUP_TOOLCHAIN, CargoBinary, Invocation, find_cargo
from cargo_hyperlight.errors import CommandFailed, context, format_error
from cargo_hyperlight.launcher import Launcher, ReplaceLauncher, SupervisedLauncher
from cargo_hyperlight.target_spec import ENTRYPOINT
from cargo_hyperlight.toolchain import cflags
from cargo_hyperlight.types import EnvValue, WarningLevel

EXEC_FAILURE = 101


def populate(invocation: Invocation, config: Configuration) -> Invocation:
    invocation.target(config.target)
    invocation.sysroot(config.sysroot_dir)
    invocation.entrypoint(ENTRYPOINT)
    # without a compiler, builds with C dependencies fail in cc-rs, all others still work
    invocation.cc_env(config.target, config.cc or "clang")
    if config.ar is not None:
        invocation.ar_env(config.target, config.ar)
    invocation.append_cflags(config.target, cflags(config.target, config.includes_dir))
    return invocation


def report(error: Exception) -> None:
    print(f"[cargo-hyperlight] Error: {format_error(error)}", file=sys.stderr)


class CargoCommand:
    """A process builder for cargo commands targeting hyperlight guests.

    Before running, the command resolves the build configuration from its own
    arguments and environment, prepares the sysroot for the target and wires
    the C toolchain and flags into the environment of the child process.

        CargoCommand(cargo).args(["build", "--release"]).exec()
    """

    def __init__(
        self,
        cargo: CargoBinary,
        environ: Mapping[str, str] | None = None,
        warn: WarningLevel = "warn",
    ):
        self._cargo = cargo
        self._command = cargo.command(os.environ if environ is None else environ)
        self.warn = warn

    def __repr__(self) -> str:
        return repr(self._command)

    def arg(self, arg: str | Path) -> "CargoCommand":
        self._command.arg(arg)
        return self

    def args(self, args: Iterable[str | Path]) -> "CargoCommand":
        self._command.args(args)
        return self

    def current_dir(self, directory: Path) -> "CargoCommand":
        self._command.current_dir(directory)
        return self

    def env(self, key: str, value: str | Path) -> "CargoCommand":
        self._command.env(key, value)
        return self

    def envs(self, envs: Mapping[str, str] | Iterable[tuple[str, str]]) -> "CargoCommand":
        self._command.envs(envs)
        return self

    def env_remove(self, key: str) -> "CargoCommand":
        self._command.env_remove(key)
        return self

    def env_clear(self) -> "CargoCommand":
        # the rustup proxies need RUSTUP_TOOLCHAIN to select the same toolchain
        toolchain = dict(self._command.get_envs()).get(RUSTUP_TOOLCHAIN)
        self._command.env_clear()
        if toolchain is not None:
            self._command.env(RUSTUP_TOOLCHAIN, toolchain)
        return self

    def get_args(self) -> tuple[str, ...]:
        return tuple(self._command.arguments)

    def get_envs(self) -> tuple[tuple[str, EnvValue], ...]:
        return self._command.get_envs()

    def get_current_dir(self) -> Path | None:
        return self._command.cwd

    def get_program(self) -> str:
        return self._command.program

    def resolve_envs(self) -> dict[str, str]:
        return self._command.resolve_env()

    def prepare(self) -> IOResultE[Invocation]:
        """Builds the sysroot and returns the fully populated invocation."""
        cwd = Path.cwd() / (self.get_current_dir() or ".")
        return (
            configuration_load(
                self.get_args(), self.resolve_envs(), cwd, self.warn, self._cargo
            )
            .bind(lambda config: sysroot.build(config).map(lambda _: config))
            .map(lambda config: populate(copy.deepcopy(self._command), config))
            .alt(context("Failed to prepare sysroot"))
        )

    def launch(self, launcher: Launcher) -> IOResultE[None]:
        return self.prepare().bind(launcher.launch)

    def status(self) -> IOResultE[None]:
        return self.prepare().bind(
            lambda invocation: SupervisedLauncher()
            .launch(invocation)
            .alt(context("Failed to execute cargo"))
        )

    def run(self) -> int:
        """Supervised run returning the exit status to report."""
        result = self.status()
        if is_successful(result):
            return 0
        error = unsafe_perform_io(result.failure())
        report(error)
        if isinstance(error, CommandFailed) and error.returncode > 0:
            return error.returncode
        return EXEC_FAILURE

    def exec(self) -> NoReturn:
        """Replaces the current process with cargo, exiting with 101 on failure."""
        result = self.launch(ReplaceLauncher())
        report(unsafe_perform_io(result.failure()))
        sys.exit(EXEC_FAILURE)


def cargo(environ: Mapping[str, str] | None = None) -> IOResultE[CargoCommand]:
    """A `CargoCommand` for the cargo named by `CARGO`, or the one on the search path."""
    env = dict(os.environ if environ is None else environ)
    return find_cargo(env).map(lambda binary: CargoCommand(binary, env))
