"""Tenant access lock driven by subscription transitions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.models.organization import Organization
from chainsync.shared.core.logging import audit_log

from .billing_shared import logger


class OrganizationLockManager:
    """
    Sole writer of ``Organization.is_active`` / ``locked_until``.

    Called only from SubscriptionLedger transitions; changes join the
    caller's transaction and are committed by it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def lock(self, org_id: str, until: datetime) -> bool:
        result = await self.db.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(is_active=False, locked_until=until)
        )
        locked = bool(result.rowcount)
        if not locked:
            logger.warning("org_lock_target_missing", org_id=org_id)
            return False
        audit_log("org_locked", org_id, {"locked_until": until.isoformat()})
        return True

    async def unlock(self, org_id: str) -> bool:
        result = await self.db.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(is_active=True, locked_until=None)
        )
        unlocked = bool(result.rowcount)
        if not unlocked:
            logger.warning("org_unlock_target_missing", org_id=org_id)
            return False
        audit_log("org_unlocked", org_id)
        return True
