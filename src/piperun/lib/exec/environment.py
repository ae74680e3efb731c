"""Child-process environment assembly."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence


def effective_environment(
    inherited: Mapping[str, str],
    overrides: Sequence[str],
) -> list[str]:
    """Return inherited entries followed by the overrides, in that order.

    Duplicate keys are kept. Precedence is positional: whoever consumes the
    sequence takes the value of the last occurrence of a key.
    """

    entries = [f"{key}={value}" for key, value in inherited.items()]
    entries.extend(overrides)
    return entries


def environment_mapping(entries: Sequence[str]) -> dict[str, str]:
    """Fold ``KEY=VALUE`` entries into a mapping; the last occurrence wins.

    An entry without ``=`` names no variable a child could read, so it is
    skipped rather than turned into an empty value.
    """

    mapping: dict[str, str] = {}
    for entry in entries:
        key, separator, value = entry.partition("=")
        if not separator:
            continue
        # Re-inserting moves the key to its last position as well.
        mapping.pop(key, None)
        mapping[key] = value
    return mapping


def child_environment(
    overrides: Sequence[str],
    inherited: Mapping[str, str] | None = None,
) -> dict[str, str] | None:
    """Resolve the environment handed to the launcher.

    ``None`` means "inherit the parent environment unchanged", which is what
    the child gets when there are no overrides. Note that the executable itself
    is still resolved against the parent's PATH, not an overridden one.
    """

    if not overrides:
        return None
    base = os.environ if inherited is None else inherited
    return environment_mapping(effective_environment(base, overrides))
