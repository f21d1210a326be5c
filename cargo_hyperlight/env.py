from collections.abc import Iterable, Iterator, Mapping

from returns.maybe import Maybe, Nothing
from returns.pipeline import is_successful

from cargo_hyperlight.types import Env, EnvValue

RUSTFLAGS = "RUSTFLAGS"
BINDGEN_CFLAGS = "BINDGEN_EXTRA_CLANG_ARGS"


def merge_env(
    base: Mapping[str, str] | Iterable[tuple[str, str]],
    overlay: Iterable[tuple[str, EnvValue]],
) -> Env:
    """Resolves a base environment and explicit set/unset entries into one mapping.

    Entries set in `overlay` replace base values, entries set to None remove
    the key, and everything else in `base` passes through unchanged.
    """
    env = dict(base.items() if isinstance(base, Mapping) else base)
    for key, value in overlay:
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    return env


class EnvironmentOverlay:
    """Ordered explicit environment entries layered on top of a base snapshot."""

    def __init__(self):
        self._vars: dict[str, EnvValue] = {}
        self.cleared = False

    def set(self, key: str, value: str) -> "EnvironmentOverlay":
        self._vars[key] = value
        return self

    def unset(self, key: str) -> "EnvironmentOverlay":
        self._vars[key] = None
        return self

    def clear(self) -> "EnvironmentOverlay":
        self._vars.clear()
        self.cleared = True
        return self

    def items(self) -> Iterator[tuple[str, EnvValue]]:
        return iter(tuple(self._vars.items()))

    def __contains__(self, key: str) -> bool:
        return key in self._vars

    def base(self, inherited: Mapping[str, str]) -> Env:
        return {} if self.cleared else dict(inherited)

    def lookup(self, key: str, inherited: Mapping[str, str]) -> Maybe[str]:
        """Current effective value of `key`: the overlay first, then the base."""
        if key in self._vars:
            return Maybe.from_optional(self._vars[key])
        return Maybe.from_optional(self.base(inherited).get(key))

    def resolve(self, inherited: Mapping[str, str]) -> Env:
        return merge_env(self.base(inherited), self.items())


def lookup_first(
    overlay: EnvironmentOverlay, inherited: Mapping[str, str], keys: Iterable[str]
) -> Maybe[str]:
    return next(
        (
            found
            for key in keys
            if is_successful(found := overlay.lookup(key, inherited))
        ),
        Nothing,
    )


def _join_flags(current: Maybe[str], flags: str) -> str:
    existing = current.value_or("")
    return f"{existing} {flags}" if existing else flags


def append_flags(
    overlay: EnvironmentOverlay, inherited: Mapping[str, str], key: str, flags: str
) -> EnvironmentOverlay:
    if not flags:
        return overlay
    return overlay.set(key, _join_flags(overlay.lookup(key, inherited), flags))


def cflags_keys(triplet: str) -> tuple[str, ...]:
    """Variables searched, in order, for the current C flags of `triplet`."""
    snake = triplet.replace("-", "_")
    return (
        f"CFLAGS_{triplet}",
        f"CFLAGS_{snake}",
        f"CFLAGS_{snake.upper()}",
        "CFLAGS_hyperlight",
        "CFLAGS_HYPERLIGHT",
        "HYPERLIGHT_CFLAGS",
        "TARGET_CFLAGS",
        "CFLAGS",
    )


def append_cflags(
    overlay: EnvironmentOverlay,
    inherited: Mapping[str, str],
    triplet: str,
    flags: str,
) -> EnvironmentOverlay:
    if not flags:
        return overlay
    keys = cflags_keys(triplet)
    # always written back to the triple-exact name
    overlay.set(keys[0], _join_flags(lookup_first(overlay, inherited, keys), flags))
    return append_flags(overlay, inherited, BINDGEN_CFLAGS, flags)
