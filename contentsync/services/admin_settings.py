from __future__ import annotations

import logging
import math
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from contentsync.core.errors import ThresholdConfigError
from contentsync.domain.models import AdminSetting


logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
DIFF_REBUILD_THRESHOLD_KEY = "diff_rebuild_threshold_percent"


async def get_admin_setting(session: AsyncSession, key: str, *, organization_id: str | None = None) -> Any | None:
    # Tenant-scoped rows override the global row for the same key.
    scopes = [GLOBAL_SCOPE]
    if organization_id:
        scopes.append(organization_id)
    result = await session.execute(
        select(AdminSetting).where(AdminSetting.key == key, AdminSetting.scope.in_(scopes))
    )
    rows = {row.scope: row for row in result.scalars().all()}
    if organization_id and organization_id in rows:
        return rows[organization_id].value
    row = rows.get(GLOBAL_SCOPE)
    return row.value if row is not None else None


async def set_admin_setting(
    session: AsyncSession,
    key: str,
    value: Any,
    *,
    scope: str = GLOBAL_SCOPE,
    updated_by: str | None = None,
) -> AdminSetting:
    result = await session.execute(
        select(AdminSetting).where(AdminSetting.scope == scope, AdminSetting.key == key)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = AdminSetting(scope=scope, key=key, value=value, updated_by=updated_by)
        session.add(row)
    else:
        row.value = value
        row.updated_by = updated_by
    await session.commit()
    logger.info("admin_setting_updated scope=%s key=%s", scope, key)
    return row


def parse_threshold_percent(value: Any) -> float:
    # Accept bare numbers or {"value": n}; anything outside 0..100 is a configuration error.
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        raise ThresholdConfigError(f"{DIFF_REBUILD_THRESHOLD_KEY} is not configured")
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ThresholdConfigError(f"{DIFF_REBUILD_THRESHOLD_KEY} must be a number, got {type(value).__name__}")
    try:
        threshold = float(value)
    except ValueError as exc:
        raise ThresholdConfigError(f"{DIFF_REBUILD_THRESHOLD_KEY} must be a number, got {value!r}") from exc
    if not math.isfinite(threshold) or threshold < 0 or threshold > 100:
        raise ThresholdConfigError(f"{DIFF_REBUILD_THRESHOLD_KEY} must be between 0 and 100, got {threshold}")
    return threshold


async def get_diff_rebuild_threshold_percent(session: AsyncSession, organization_id: str | None = None) -> float:
    value = await get_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, organization_id=organization_id)
    return parse_threshold_percent(value)
