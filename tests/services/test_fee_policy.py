"""Fee policy table tests."""

import pytest

from entry_engine.models import HallSetting
from entry_engine.services.fee_policy import (
    FeeDefaults,
    HallFeeOverrides,
    compute_fee_cents,
    normalize_role,
)


@pytest.mark.parametrize(
    "role,expected",
    [
        ("large", 0),
        ("mega", 0),
        ("small", 2500),
        ("medium", 2500),
        ("nonmember", 3000),
        (None, 3000),
        ("", 3000),
        ("platinum", 3000),
    ],
)
def test_global_fees(role, expected):
    assert compute_fee_cents(role) == expected


@pytest.mark.parametrize(
    "role,expected",
    [
        ("large", 0),
        ("small", 1800),
        ("medium", 1800),
        ("nonmember", 2200),
    ],
)
def test_hall_overrides(role, expected):
    overrides = HallFeeOverrides(base_fee_cents=1800, nonmember_fee_cents=2200)
    assert compute_fee_cents(role, overrides) == expected


def test_partial_override_falls_back_to_global():
    overrides = HallFeeOverrides(base_fee_cents=2000)
    assert compute_fee_cents("small", overrides) == 2000
    assert compute_fee_cents("nonmember", overrides) == 3000


def test_role_is_case_and_whitespace_insensitive():
    assert normalize_role("  LARGE ") == "large"
    assert compute_fee_cents(" Mega") == 0
    assert compute_fee_cents("Medium") == 2500


def test_custom_defaults():
    defaults = FeeDefaults(base_fee_cents=1000, nonmember_fee_cents=1500)
    assert compute_fee_cents("small", None, defaults) == 1000
    assert compute_fee_cents("guest", None, defaults) == 1500


def test_overrides_from_missing_hall_setting():
    assert HallFeeOverrides.from_setting(None) == HallFeeOverrides()


def test_overrides_from_hall_setting():
    setting = HallSetting(hall_id="hall-1", base_fee_cents=1200, nonmember_fee_cents=None)
    overrides = HallFeeOverrides.from_setting(setting)
    assert overrides.base_fee_cents == 1200
    assert compute_fee_cents("nonmember", overrides) == 3000


def test_zero_override_comps_members():
    assert compute_fee_cents("small", HallFeeOverrides(base_fee_cents=0)) == 0
