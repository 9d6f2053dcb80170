from __future__ import annotations

import pytest

from contentsync.core.errors import ThresholdConfigError
from contentsync.services.admin_settings import (
    DIFF_REBUILD_THRESHOLD_KEY,
    get_admin_setting,
    get_diff_rebuild_threshold_percent,
    set_admin_setting,
)


@pytest.mark.asyncio
async def test_settings_are_upserted_per_scope(session_factory) -> None:
    async with session_factory() as session:
        await set_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, 20, updated_by="ops")
        await set_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, 25, updated_by="ops")
        await set_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, {"value": 40}, scope="org-1")

        assert await get_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY) == 25
        assert await get_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, organization_id="org-1") == {"value": 40}
        assert await get_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, organization_id="org-2") == 25
        assert await get_diff_rebuild_threshold_percent(session, "org-1") == 40.0
        assert await get_admin_setting(session, "unknown_key") is None


@pytest.mark.asyncio
async def test_missing_or_invalid_threshold_raises(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ThresholdConfigError):
            await get_diff_rebuild_threshold_percent(session)
        await set_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, 250)
        with pytest.raises(ThresholdConfigError):
            await get_diff_rebuild_threshold_percent(session)
