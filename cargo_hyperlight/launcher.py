from typing import NoReturn, Protocol
import os
import subprocess
import sys

from returns.io import IOFailure, IOResultE

from cargo_hyperlight.cargo import Invocation
from cargo_hyperlight.errors import FilesystemError, ProcessLaunchFailed, caused

PROCESS_REPLACEMENT = os.name == "posix"


class Launcher(Protocol):
    def launch(self, invocation: Invocation) -> IOResultE[None]: ...


class SupervisedLauncher:
    """Spawns the child with inherited standard streams and waits for it."""

    def launch(self, invocation: Invocation) -> IOResultE[None]:
        return invocation.checked_status()


class ReplaceLauncher:
    """Replaces the current process image; only ever returns a failure."""

    def launch(self, invocation: Invocation) -> IOResultE[None]:
        if invocation.cwd is not None:
            try:
                os.chdir(invocation.cwd)
            except OSError as e:
                return IOFailure(caused(FilesystemError("change directory to", invocation.cwd), e))

        env = invocation.resolve_env()
        try:
            if PROCESS_REPLACEMENT:
                os.execvpe(invocation.program, invocation.command, env)
            _forward(invocation, env)
        except OSError as e:
            return IOFailure(caused(ProcessLaunchFailed(invocation.describe()), e))


def _forward(invocation: Invocation, env: dict[str, str]) -> NoReturn:
    # no process replacement outside posix: run the child and forward its exit code
    sys.exit(subprocess.run(invocation.command, env=env).returncode)
