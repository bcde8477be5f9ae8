from datetime import timedelta

import pytest

from chainsync.models import Organization
from chainsync.modules.billing.domain.billing.organization_lock import OrganizationLockManager
from chainsync.shared.core.clock import as_utc


@pytest.mark.asyncio
async def test_lock_and_unlock_round_trip(db, clock):
    db.add(Organization(id="org-1", name="Org 1", is_active=True))
    await db.commit()
    manager = OrganizationLockManager(db)

    until = clock() + timedelta(days=3)
    assert await manager.lock("org-1", until) is True
    await db.commit()

    org = await db.get(Organization, "org-1")
    await db.refresh(org)
    assert org.is_active is False
    assert as_utc(org.locked_until) == until
    assert org.is_locked is True

    assert await manager.unlock("org-1") is True
    await db.commit()
    await db.refresh(org)
    assert org.is_active is True
    assert org.locked_until is None


@pytest.mark.asyncio
async def test_missing_org_is_reported_not_raised(db, clock):
    manager = OrganizationLockManager(db)

    assert await manager.lock("org-missing", clock()) is False
    assert await manager.unlock("org-missing") is False
