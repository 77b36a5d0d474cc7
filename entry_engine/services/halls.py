"""Per-hall fee overrides and revenue split."""

from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.logging_config import get_logger
from entry_engine.models.tournament import HallSetting
from entry_engine.services.fee_policy import HallFeeOverrides
from entry_engine.utils.errors import ValidationError

logger = get_logger(__name__)


class HallSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, hall_id: str) -> HallSetting | None:
        return await self.db.get(HallSetting, hall_id)

    async def fee_overrides(self, hall_id: str | None) -> HallFeeOverrides:
        if not hall_id:
            return HallFeeOverrides()
        return HallFeeOverrides.from_setting(await self.get(hall_id))

    async def upsert(
        self,
        hall_id: str,
        base_fee_cents: int | None = None,
        nonmember_fee_cents: int | None = None,
        revenue_split_pct: float | None = None,
    ) -> HallSetting:
        """Replace a hall's overrides; None clears an override."""
        for name, value in (
            ("baseFeeCents", base_fee_cents),
            ("nonmemberFeeCents", nonmember_fee_cents),
        ):
            if value is not None and value < 0:
                raise ValidationError(f"{name} must not be negative", {name: value})
        if revenue_split_pct is not None and not 0.0 <= revenue_split_pct <= 1.0:
            raise ValidationError(
                "revenueSplitPct must be between 0 and 1",
                {"revenueSplitPct": revenue_split_pct},
            )

        setting = await self.get(hall_id)
        if setting is None:
            setting = HallSetting(hall_id=hall_id)
            self.db.add(setting)
        setting.base_fee_cents = base_fee_cents
        setting.nonmember_fee_cents = nonmember_fee_cents
        setting.revenue_split_pct = revenue_split_pct
        await self.db.flush()

        logger.info(
            "hall_settings_updated",
            hall_id=hall_id,
            base_fee_cents=base_fee_cents,
            nonmember_fee_cents=nonmember_fee_cents,
            revenue_split_pct=revenue_split_pct,
        )
        return setting
