from __future__ import annotations

import itertools

import pytest

from extensionmanager.core.version import Version


def test_parse_full_version() -> None:
    v = Version.parse("v1.2.3-rc4")
    assert (v.major, v.minor, v.patch, v.release_candidate) == (1, 2, 3, 4)
    assert str(v) == "v1.2.3-rc4"


def test_parse_ignores_unknown_qualifier() -> None:
    assert Version.parse("v2.0.0-SNAPSHOT") == Version(2, 0, 0)


@pytest.mark.parametrize("text", ["", "1.2.3", "version1", "v", "va.b.c"])
def test_parse_rejects_invalid_text(text: str) -> None:
    with pytest.raises(ValueError):
        Version.parse(text)


def test_is_valid_can_require_minor_and_patch() -> None:
    assert Version.is_valid("v1")
    assert not Version.is_valid("v1", include_minor_and_patch=True)
    assert not Version.is_valid("v1.2", include_minor_and_patch=True)
    assert Version.is_valid("v1.2.3", include_minor_and_patch=True)
    assert not Version.is_valid("nonsense")


def test_missing_components_are_wildcards() -> None:
    assert Version.parse("v1").compare(Version.parse("v1.2.3")) == 0
    assert Version.parse("v1").compare(Version.parse("v1.9.9")) == 0
    assert Version.parse("v1.2").compare(Version.parse("v1.2.7")) == 0
    assert Version.parse("v1.2") < Version.parse("v1.3.0")
    assert Version.parse("v2") > Version.parse("v1.9.9")


def test_release_candidates_precede_final_release() -> None:
    assert Version.parse("v1.0.0-rc1") < Version.parse("v1.0.0")
    assert Version.parse("v1.0.0-rc1") < Version.parse("v1.0.0-rc2")
    assert Version.parse("v1.0.0-rc9") < Version.parse("v1.0.1-rc1")
    assert Version.parse("v1.0.0") > Version.parse("v1.0.0-rc3")


def test_numeric_ordering() -> None:
    assert Version.parse("v0.10.0") > Version.parse("v0.9.0")
    assert Version.parse("v1.2.10") > Version.parse("v1.2.9")
    assert Version.parse("v10.0.0") > Version.parse("v9.99.99")


def test_ordering_of_full_versions_is_transitive() -> None:
    texts = ["v0.1.0", "v0.10.0", "v1.0.0-rc1", "v1.0.0-rc2", "v1.0.0", "v1.2.3", "v1.9.9", "v2.0.0-rc2", "v2.0.0"]
    versions = [Version.parse(text) for text in texts]

    for a, b, c in itertools.product(versions, repeat=3):
        if a <= b and b <= c:
            assert a <= c, f"{a} <= {b} <= {c}"


def test_equality_is_structural() -> None:
    assert Version.parse("v1.2.3") == Version(1, 2, 3)
    assert Version.parse("v1") != Version.parse("v1.2.3")
    assert len({Version.parse("v1.2.3"), Version.parse("v1.2.3-beta")}) == 1
