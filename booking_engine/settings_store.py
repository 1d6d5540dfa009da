"""
Settings / Policy Store
=======================

Versioned key/value settings. Payloads are stored as JSON and validated
into typed models on read; an invalid stored payload falls back to the
defaults rather than leaking an untyped dict into the refund logic.
"""

from datetime import date
from typing import Any, List, Optional, Tuple

import structlog
from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import SeasonalPricingRule, Setting, utcnow
from .schemas import CancellationPolicy

logger = structlog.get_logger(__name__)

CANCELLATION_POLICY_KEY = "cancellation_policy"
# Stored payloads may use field names or camelCase aliases
POLICY_ALIASES = {
    name: field.alias or name for name, field in CancellationPolicy.model_fields.items()
}


async def get_setting(db: AsyncSession, key: str) -> Optional[Setting]:
    result = await db.execute(select(Setting).where(Setting.key == key))
    return result.scalar_one_or_none()


async def save_setting(db: AsyncSession, key: str, value: Any) -> Setting:
    """Insert or update a setting, bumping its version. Caller commits."""
    setting = await get_setting(db, key)
    if setting is None:
        setting = Setting(key=key, value=value, version=1)
        db.add(setting)
    else:
        setting.value = value
        setting.version = (setting.version or 0) + 1
        setting.updated_at = utcnow()
    await db.flush()

    logger.info("Setting saved", key=key, version=setting.version)
    return setting


async def get_cancellation_policy_with_version(db: AsyncSession) -> Tuple[CancellationPolicy, Optional[int]]:
    setting = await get_setting(db, CANCELLATION_POLICY_KEY)
    if setting is None or not isinstance(setting.value, dict):
        return CancellationPolicy(), None

    defaults = CancellationPolicy().model_dump(by_alias=True)
    stored = {POLICY_ALIASES.get(k, k): v for k, v in setting.value.items()}
    try:
        policy = CancellationPolicy.model_validate({**defaults, **stored})
    except ValidationError as e:
        logger.error(
            "Stored cancellation policy is invalid, using defaults",
            version=setting.version,
            errors=e.errors(include_url=False),
        )
        return CancellationPolicy(), setting.version

    return policy, setting.version


async def get_cancellation_policy(db: AsyncSession) -> CancellationPolicy:
    """Current policy, stored fields merged over the defaults."""
    policy, _ = await get_cancellation_policy_with_version(db)
    return policy


async def save_cancellation_policy(db: AsyncSession, policy: CancellationPolicy) -> Setting:
    return await save_setting(
        db,
        CANCELLATION_POLICY_KEY,
        policy.model_dump(mode="json", by_alias=True),
    )


async def active_seasonal_rules(db: AsyncSession, check_in: date, check_out: date) -> List[SeasonalPricingRule]:
    """Active rules covering at least one night of [check_in, check_out)."""
    result = await db.execute(
        select(SeasonalPricingRule).where(
            and_(
                SeasonalPricingRule.active.is_(True),
                SeasonalPricingRule.start_date < check_out,
                SeasonalPricingRule.end_date >= check_in,
            )
        )
    )
    return list(result.scalars().all())
