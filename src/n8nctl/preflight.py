"""Host dependency checks run before any command touches the host."""
from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable

from .errors import PreconditionError


def missing_binaries(
    binaries: Iterable[str],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> list[str]:
    """Return the binaries from *binaries* that cannot be found on ``PATH``."""
    seen: set[str] = set()
    missing: list[str] = []
    for binary in binaries:
        if binary in seen:
            continue
        seen.add(binary)
        if which(binary) is None:
            missing.append(binary)
    return missing


def check_dependencies(
    binaries: Iterable[str],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    """Raise :class:`PreconditionError` naming every missing binary."""
    missing = missing_binaries(binaries, which=which)
    if missing:
        joined = ", ".join(f"'{name}'" for name in missing)
        raise PreconditionError(f"Required dependency {joined} is not installed or not in PATH.")


__all__ = ["check_dependencies", "missing_binaries"]
