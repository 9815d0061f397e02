import pytest

from cpr import versions
from cpr.errors import IncompatibleVersion, InvalidVersion, VersionSkewError


def test_normalize_splits_build_suffix():
    assert versions.normalize("v1.31.2+k0s.0") == ("v1.31.2", "k0s.0")
    assert versions.normalize("v1.31.2") == ("v1.31.2", None)
    assert versions.normalize("1.30.0-rc.1+k0s.2") == ("1.30.0-rc.1", "k0s.2")


def test_missing_suffix_compares_equal_to_baseline():
    assert versions.equal("v1.31.0", "v1.31.0+k0s.0")
    assert versions.equal("v1.31.0+k0s.0", "v1.31.0")
    assert versions.equal("v1.31.0", "1.31.0")


def test_missing_suffix_adopts_the_other_side():
    assert versions.equal("v1.31.0", "v1.31.0+k0s.1")
    assert not versions.equal("v1.31.0+k0s.0", "v1.31.0+k0s.1")


def test_less_than_orders_core_then_suffix():
    assert versions.less_than("v1.30.5", "v1.31.0")
    assert versions.less_than("v1.31.0+k0s.0", "v1.31.0+k0s.1")
    assert versions.less_than("v1.31.0-rc.1", "v1.31.0")
    assert not versions.less_than("v1.31.0", "v1.31.0+k0s.0")


def test_min_version_returns_value_as_written():
    assert versions.min_version(["v1.31.2+k0s.0", "v1.30.4", "v1.31.0"]) == "v1.30.4"
    assert versions.min_version([]) == ""


def test_invalid_version_is_rejected():
    with pytest.raises(InvalidVersion):
        versions.parse("latest")
    with pytest.raises(InvalidVersion):
        versions.equal("v1.31", "v1.31.0")


def test_format_status_version_follows_spec_decoration():
    assert versions.format_status_version("v1.31.2+k0s.0", "v1.31.1+k0s.0") == "v1.31.1+k0s.0"
    assert versions.format_status_version("v1.31.2", "v1.31.1+k0s.0") == "v1.31.1"


def test_upgrade_skew_allows_one_minor_step():
    versions.check_upgrade_skew("v1.30.4", "v1.31.2")
    versions.check_upgrade_skew("v1.31.2", "v1.31.2")
    with pytest.raises(VersionSkewError):
        versions.check_upgrade_skew("v1.29.0", "v1.31.2")


def test_incompatible_release_is_denied():
    with pytest.raises(IncompatibleVersion):
        versions.deny_incompatible_version("v1.31.1+k0s.0")
    versions.deny_incompatible_version("v1.31.2+k0s.0")
