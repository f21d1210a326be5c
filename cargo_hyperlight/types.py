from typing import Literal

Cmd = tuple[str, ...]
Env = dict[str, str]

# None marks a variable that is explicitly unset
EnvValue = str | None

WarningLevel = Literal["ignore", "warn", "error"]
