# blueprint/versioning.py
"""Semantic versions for export history (MAJOR.MINOR.PATCH)."""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

INITIAL_VERSION = "1.0.0"

_SEMVER = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")


@dataclass(frozen=True, order=True)
class Version:
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def is_valid_version(text: Optional[str]) -> bool:
    return bool(text) and bool(_SEMVER.match(text.strip()))


def parse_version(text: str) -> Version:
    m = _SEMVER.match((text or "").strip())
    if not m:
        raise ValueError(f"invalid semantic version: {text!r}")
    return Version(int(m.group(1)), int(m.group(2)), int(m.group(3)))


def increment_version(version: Version, part: str = "patch") -> Version:
    if part == "major":
        return Version(version.major + 1, 0, 0)
    if part == "minor":
        return Version(version.major, version.minor + 1, 0)
    if part == "patch":
        return Version(version.major, version.minor, version.patch + 1)
    raise ValueError(f"unknown version part: {part!r}")


def next_version(history: Iterable[str], requested: Optional[str] = None) -> str:
    """
    Explicit version wins; otherwise the newest history entry with its patch
    incremented; the first export is 1.0.0. `history` is newest first.
    """
    if requested:
        return str(parse_version(requested))
    for entry in history:
        try:
            return str(increment_version(parse_version(entry)))
        except ValueError:
            continue
    return INITIAL_VERSION
