# tests/test_versioning.py
import pytest

from blueprint.versioning import (
    INITIAL_VERSION, Version, increment_version, is_valid_version, next_version, parse_version,
)


def test_first_export_is_initial_version():
    assert next_version([]) == INITIAL_VERSION == "1.0.0"


def test_patch_increments_from_latest():
    assert next_version(["1.0.3", "1.0.2", "1.0.1"]) == "1.0.4"


def test_explicit_version_wins():
    assert next_version(["1.0.3"], "2.0.0") == "2.0.0"


def test_invalid_history_entries_are_skipped():
    assert next_version(["garbage", "1.2.0"]) == "1.2.1"


def test_versions_are_monotonic_over_repeated_exports():
    history = []
    for _ in range(5):
        history.insert(0, next_version(history))
    parsed = [parse_version(v) for v in reversed(history)]
    assert parsed == sorted(parsed)
    assert history[0] == "1.0.4"


@pytest.mark.parametrize("part,expected", [
    ("major", "2.0.0"), ("minor", "1.3.0"), ("patch", "1.2.4"),
])
def test_increment_parts(part, expected):
    assert str(increment_version(Version(1, 2, 3), part)) == expected


@pytest.mark.parametrize("text", ["1.0", "v1.0.0", "1.0.0-beta", "01.0.0", "", None])
def test_invalid_versions(text):
    assert not is_valid_version(text)
    with pytest.raises(ValueError):
        parse_version(text)


def test_unknown_part_rejected():
    with pytest.raises(ValueError):
        increment_version(Version(1, 0, 0), "build")
