"""
Tests for the permission gate and the user directory.
"""

from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from orderflow.database.models.user import UserRole
from orderflow.services.identity.directory import UserDirectory, UserDirectoryError
from orderflow.services.identity.permissions import (
    CAPABILITIES,
    Actor,
    PermissionGate,
)
from orderflow.services.orders.enums import OrderAction
from orderflow.services.orders.errors import UnauthorizedError


@pytest.fixture
def gate() -> PermissionGate:
    return PermissionGate()


# ============================================================================
# Permission Gate Tests
# ============================================================================


class TestPermissionGate:
    """Test the capability table lookups."""

    @pytest.mark.parametrize(
        "role,action",
        [
            (UserRole.SALES, OrderAction.CREATE),
            (UserRole.SALES, OrderAction.RESUBMIT),
            (UserRole.ACCOUNTANT, OrderAction.APPROVE),
            (UserRole.ACCOUNTANT, OrderAction.AMEND),
            (UserRole.WAREHOUSE, OrderAction.CONFIRM),
            (UserRole.WAREHOUSE, OrderAction.REJECT),
            (UserRole.SHIPPER, OrderAction.PARTIAL_COMPLETE),
            (UserRole.ADMIN, OrderAction.CANCEL),
        ],
    )
    def test_granted(self, gate, role, action) -> None:
        assert gate.has_permission(role, action)

    @pytest.mark.parametrize(
        "role,action",
        [
            (UserRole.SALES, OrderAction.APPROVE),
            (UserRole.ACCOUNTANT, OrderAction.CREATE),
            (UserRole.WAREHOUSE, OrderAction.SHIP),
            (UserRole.SHIPPER, OrderAction.CONFIRM),
            (UserRole.ADMIN, OrderAction.APPROVE),
        ],
    )
    def test_denied(self, gate, role, action) -> None:
        assert not gate.has_permission(role, action)

    def test_unknown_resource_denied(self, gate) -> None:
        assert not gate.has_permission(UserRole.SALES, OrderAction.CREATE, "invoices")

    def test_cancel_capability(self) -> None:
        cancellers = {role for role, actions in CAPABILITIES.items()
                      if OrderAction.CANCEL in actions}
        assert cancellers == {UserRole.SALES, UserRole.ACCOUNTANT, UserRole.ADMIN}

    def test_ensure_allowed_raises_with_context(self, gate) -> None:
        actor = Actor(id="wh-1", role=UserRole.WAREHOUSE)

        with pytest.raises(UnauthorizedError) as exc_info:
            gate.ensure_allowed(actor, OrderAction.APPROVE)

        assert exc_info.value.context == {"role": "warehouse", "action": "approve"}

    def test_ensure_allowed_passes(self, gate) -> None:
        gate.ensure_allowed(Actor(id="s", role=UserRole.SALES), OrderAction.CREATE)

    def test_custom_table(self) -> None:
        gate = PermissionGate({UserRole.SHIPPER: frozenset({OrderAction.APPROVE})})
        assert gate.allowed_actions(UserRole.SHIPPER) == {OrderAction.APPROVE}
        assert gate.allowed_actions(UserRole.SALES) == frozenset()

    def test_display_name_falls_back_to_id(self) -> None:
        assert Actor(id="u-9", role=UserRole.SALES).display_name == "u-9"
        assert Actor(id="u-9", role=UserRole.SALES, name="Uma").display_name == "Uma"


# ============================================================================
# User Directory Tests
# ============================================================================


class TestUserDirectory:
    """Test actor resolution and role expansion."""

    @pytest.mark.asyncio
    async def test_get_actor(self, directory, registered_users) -> None:
        actor = await directory.get_actor("acct-1")
        assert actor == Actor(id="acct-1", role=UserRole.ACCOUNTANT, name="Alex Accountant")

    @pytest.mark.asyncio
    async def test_unknown_user(self, directory) -> None:
        assert await directory.get_actor("ghost") is None

    @pytest.mark.asyncio
    async def test_inactive_user_resolves_to_none(self, directory) -> None:
        await directory.register("old-1", "Old Timer", UserRole.SALES, is_active=False)
        assert await directory.get_actor("old-1") is None
        assert await directory.users_with_role(UserRole.SALES) == []

    @pytest.mark.asyncio
    async def test_role_members_sorted(self, directory, registered_users) -> None:
        members = await directory.role_members({UserRole.SALES, UserRole.SHIPPER})
        assert members == {
            UserRole.SALES: ["sales-1", "sales-2"],
            UserRole.SHIPPER: ["ship-1"],
        }

    @pytest.mark.asyncio
    async def test_register_updates_existing(self, directory) -> None:
        await directory.register("u-1", "First", UserRole.SALES)
        await directory.register("u-1", "Renamed", UserRole.WAREHOUSE, email="u@x.test")

        actor = await directory.get_actor("u-1")

        assert actor.name == "Renamed"
        assert actor.role == UserRole.WAREHOUSE

    @pytest.mark.asyncio
    async def test_lookup_failure_wrapped(self) -> None:
        directory = UserDirectory(
            Mock(side_effect=OperationalError("SELECT", {}, Exception("x")))
        )

        with pytest.raises(UserDirectoryError) as exc_info:
            await directory.users_with_role(UserRole.ADMIN)

        assert exc_info.value.context == {"role": "admin"}
