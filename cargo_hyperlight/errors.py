from pathlib import Path
from typing import Callable, TypeVar

E = TypeVar("E", bound=BaseException)


class HyperlightError(Exception):
    pass


class ToolNotFound(HyperlightError):
    def __init__(self, name: str):
        super().__init__(f"Could not find '{name}' in PATH")
        self.name = name


class UnsupportedTarget(HyperlightError):
    def __init__(self, triple: str):
        super().__init__(f"Unsupported target triple: {triple}")
        self.triple = triple


class CommandFailed(HyperlightError):
    def __init__(self, description: str, returncode: int, stderr: str = ""):
        if returncode < 0:
            message = f"Command terminated by signal {-returncode}:\n{description}"
        else:
            message = f"Command exited with code {returncode}:\n{description}"
        if stderr:
            message += f"\n{stderr}"
        super().__init__(message)
        self.description = description
        self.returncode = returncode
        self.stderr = stderr


class QueryFailed(HyperlightError):
    def __init__(self, step: str, stderr: str = ""):
        super().__init__(f"{step}\n{stderr}" if stderr else step)
        self.step = step
        self.stderr = stderr


class SysrootBuildFailed(HyperlightError):
    def __init__(self, description: str = ""):
        super().__init__(
            f"Failed to build sysroot:\n{description}"
            if description
            else "Failed to build sysroot"
        )
        self.description = description


class FilesystemError(HyperlightError):
    def __init__(self, op: str, path: Path):
        super().__init__(f"Failed to {op} '{path}'")
        self.op = op
        self.path = path


class ProcessLaunchFailed(HyperlightError):
    def __init__(self, description: str):
        super().__init__(f"Failed to execute command:\n{description}")
        self.description = description


def context(message: str) -> Callable[[E], E]:
    """Attach `message` as a note, for use with `IOResultE.alt`."""

    def _inner(error: E) -> E:
        error.add_note(message)
        return error

    return _inner


def caused(error: HyperlightError, cause: BaseException) -> HyperlightError:
    error.__cause__ = cause
    return error


def format_error(error: BaseException) -> str:
    lines: list[str] = []
    current: BaseException | None = error
    while current is not None:
        if lines:
            lines.append("Caused by:")
        lines.append(str(current) or type(current).__name__)
        lines.extend(f"  {note}" for note in getattr(current, "__notes__", ()))
        current = current.__cause__
    return "\n".join(lines)
