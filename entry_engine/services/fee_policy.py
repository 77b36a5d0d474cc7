"""Tournament entry fee policy.

Pure function of role tier and hall overrides; no I/O, no clock.

| role              | fee                                          |
|-------------------|----------------------------------------------|
| large, mega       | 0 (comped)                                   |
| small, medium     | hall base override, else global base fee     |
| anything else     | hall nonmember override, else global default |
"""

from dataclasses import dataclass

from entry_engine.config import Settings
from entry_engine.models.membership import MembershipRole
from entry_engine.models.tournament import HallSetting

COMPED_ROLES = frozenset({MembershipRole.LARGE.value, MembershipRole.MEGA.value})
MEMBER_ROLES = frozenset({MembershipRole.SMALL.value, MembershipRole.MEDIUM.value})


@dataclass(frozen=True)
class FeeDefaults:
    """Global fees in minor currency units."""

    base_fee_cents: int = 2500
    nonmember_fee_cents: int = 3000

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeDefaults":
        return cls(
            base_fee_cents=settings.tournament_basic_fee_cents,
            nonmember_fee_cents=settings.tournament_nonmember_fee_cents,
        )


@dataclass(frozen=True)
class HallFeeOverrides:
    """Optional per-hall fee overrides; None falls back to the global fee."""

    base_fee_cents: int | None = None
    nonmember_fee_cents: int | None = None

    @classmethod
    def from_setting(cls, setting: HallSetting | None) -> "HallFeeOverrides":
        if setting is None:
            return cls()
        return cls(
            base_fee_cents=setting.base_fee_cents,
            nonmember_fee_cents=setting.nonmember_fee_cents,
        )


def normalize_role(role: str | None) -> str:
    return (role or MembershipRole.NONMEMBER.value).strip().lower()


def compute_fee_cents(
    role: str | None,
    overrides: HallFeeOverrides | None = None,
    defaults: FeeDefaults = FeeDefaults(),
) -> int:
    """Entry fee in cents for a role at a hall.

    Total and deterministic: unknown roles are priced as nonmembers.
    """
    tier = normalize_role(role)
    overrides = overrides or HallFeeOverrides()

    if tier in COMPED_ROLES:
        return 0
    if tier in MEMBER_ROLES:
        if overrides.base_fee_cents is not None:
            return overrides.base_fee_cents
        return defaults.base_fee_cents
    if overrides.nonmember_fee_cents is not None:
        return overrides.nonmember_fee_cents
    return defaults.nonmember_fee_cents
