"""Tests for administrative overrides: suspend, reactivate, device reset."""

import pytest

from quoteauth.service.admin import AuthContext
from quoteauth.service.errors import (
    AccountDeactivated,
    AccountSuspended,
    ConflictError,
    Forbidden,
    NotFoundError,
    TokenInvalid,
)

TEST_PASSWORD = "TestPassword123"


@pytest.fixture
def customer(services):
    result = services.auth.register(
        "customer", "buyer@example.com", TEST_PASSWORD, "fp-one", ip="10.0.0.1"
    )
    return result


class TestAuthorization:
    """Tests for staff-only access."""

    def test_non_staff_actor_is_forbidden(self, services, customer):
        """Test that customers cannot use admin overrides."""
        actor = AuthContext(account_id=customer.account.id, role="customer", portal="customer")
        with pytest.raises(Forbidden):
            services.admin.suspend(actor, customer.account.id)
        with pytest.raises(Forbidden):
            services.admin.list_login_history(actor, customer.account.id)

    def test_employee_is_staff(self, services, customer):
        """Test that the employee role may act as an administrator."""
        staff = services.auth.provision_staff(
            "ops@example.com", TEST_PASSWORD, role="employee"
        )
        actor = AuthContext(account_id=staff.id, role="employee", portal="admin")
        assert services.admin.suspend(actor, customer.account.id).status == "suspended"

    def test_missing_account(self, services, admin_actor):
        """Test that unknown accounts raise NotFoundError."""
        with pytest.raises(NotFoundError):
            services.admin.suspend(admin_actor, "missing")


class TestSuspend:
    """Tests for suspension and reactivation."""

    def test_suspend_revokes_every_family(self, services, admin_actor, customer):
        """Test that suspension kills all refresh tokens."""
        services.auth.login("customer", "buyer@example.com", TEST_PASSWORD, "fp-one")

        services.admin.suspend(admin_actor, customer.account.id, "chargeback")

        tokens = services.store.list_refresh_tokens(customer.account.id)
        assert len(tokens) == 2
        assert all(t.revoked_reason == "account_suspended" for t in tokens)

    def test_refresh_after_suspend_reports_suspension(self, services, admin_actor, customer):
        """Test that an unexpired token fails with AccountSuspended."""
        services.admin.suspend(admin_actor, customer.account.id)

        with pytest.raises(AccountSuspended):
            services.auth.refresh(customer.tokens.refresh_token, "fp-one")

    def test_suspend_twice_conflicts(self, services, admin_actor, customer):
        """Test that suspending a suspended account is a conflict."""
        services.admin.suspend(admin_actor, customer.account.id)
        with pytest.raises(ConflictError):
            services.admin.suspend(admin_actor, customer.account.id)

    def test_reactivate_does_not_restore_tokens(self, services, admin_actor, customer):
        """Test that old tokens stay dead after reactivation."""
        services.admin.suspend(admin_actor, customer.account.id)
        account = services.admin.reactivate(admin_actor, customer.account.id, "resolved")

        assert account.status == "active"
        with pytest.raises(TokenInvalid):
            services.auth.refresh(customer.tokens.refresh_token, "fp-one")
        assert services.auth.login(
            "customer", "buyer@example.com", TEST_PASSWORD, "fp-one"
        ).tokens is not None

    def test_reactivate_active_conflicts(self, services, admin_actor, customer):
        """Test that reactivating an active account is a conflict."""
        with pytest.raises(ConflictError):
            services.admin.reactivate(admin_actor, customer.account.id)

    def test_actions_are_audited(self, services, admin_actor, customer):
        """Test that each override appends an audit event."""
        services.admin.suspend(admin_actor, customer.account.id, "chargeback")
        services.admin.reactivate(admin_actor, customer.account.id, "paid")

        events = services.admin.list_audit_events(admin_actor, customer.account.id)
        assert [e.action for e in events] == ["reactivate", "suspend"]
        suspend = events[1]
        assert suspend.performed_by == admin_actor.account_id
        assert suspend.reason == "chargeback"
        assert suspend.old_values == {"status": "active"}
        assert suspend.new_values["status"] == "suspended"


class TestDeviceReset:
    """Tests for admin device binding resets."""

    def test_reset_records_reason_on_history(self, services, admin_actor, customer):
        """Test that the reason lands on the deactivated binding row."""
        result = services.admin.reset_device_binding(
            admin_actor, customer.account.id, "new phone"
        )

        assert result.previous_binding.fingerprint == "fp-one"
        history = services.devices.history(customer.account.id)
        assert history[0].deactivation_reason == "new phone"
        assert history[0].deactivated_by == admin_actor.account_id

    def test_tokens_issued_before_reset_fail(self, services, admin_actor, customer):
        """Test that pre-reset refresh tokens are unusable."""
        services.admin.reset_device_binding(admin_actor, customer.account.id)

        with pytest.raises(TokenInvalid):
            services.auth.refresh(customer.tokens.refresh_token, "fp-one")

    def test_reset_is_audited(self, services, admin_actor, customer):
        """Test that resets appear in the audit log."""
        services.admin.reset_device_binding(admin_actor, customer.account.id, "stolen")

        events = services.admin.list_audit_events(admin_actor, customer.account.id)
        assert events[0].action == "reset_device"
        assert events[0].reason == "stolen"


class TestDeactivate:
    """Tests for permanent account closure."""

    def test_deactivate_blocks_login_and_refresh(self, services, admin_actor, customer):
        """Test that a deactivated account loses every session and cannot log in."""
        account = services.admin.deactivate(admin_actor, customer.account.id, "closed")

        assert account.status == "deactivated"
        assert all(t.revoked for t in services.store.list_refresh_tokens(customer.account.id))
        with pytest.raises(AccountDeactivated):
            services.auth.refresh(customer.tokens.refresh_token, "fp-one")
        with pytest.raises(AccountDeactivated):
            services.auth.login("customer", "buyer@example.com", TEST_PASSWORD, "fp-one")

    def test_deactivated_is_terminal(self, services, admin_actor, customer):
        """Test that deactivation cannot be repeated or undone."""
        services.admin.deactivate(admin_actor, customer.account.id)

        with pytest.raises(ConflictError):
            services.admin.deactivate(admin_actor, customer.account.id)
        with pytest.raises(ConflictError):
            services.admin.reactivate(admin_actor, customer.account.id)

    def test_admin_cannot_deactivate_self(self, services, admin_actor):
        """Test that an administrator cannot close their own account."""
        with pytest.raises(Forbidden):
            services.admin.deactivate(admin_actor, admin_actor.account_id)

    def test_deactivate_is_audited(self, services, admin_actor, customer):
        """Test that deactivation records the previous status and reason."""
        services.admin.deactivate(admin_actor, customer.account.id, "fraud")

        [event] = services.admin.list_audit_events(admin_actor, customer.account.id)
        assert event.action == "deactivate"
        assert event.reason == "fraud"
        assert event.old_values == {"status": "active"}
        assert event.new_values["revoked_tokens"] == 1


class TestAccountDetail:
    """Tests for the admin account detail read."""

    def test_detail_shows_active_binding_and_history(self, services, admin_actor, customer):
        """Test that detail carries status, the live binding and past bindings."""
        services.admin.reset_device_binding(admin_actor, customer.account.id, "new laptop")
        services.auth.login("customer", "buyer@example.com", TEST_PASSWORD, "fp-two")

        detail = services.admin.account_detail(admin_actor, customer.account.id)

        assert detail.account.status == "active"
        assert detail.active_binding.fingerprint == "fp-two"
        assert [b.fingerprint for b in detail.bindings] == ["fp-two", "fp-one"]
        assert detail.bindings[1].deactivation_reason == "new laptop"

    def test_detail_without_binding(self, services, admin_actor):
        """Test that an unbound account has no active binding."""
        supplier = services.auth.register("supplier", "vendor@example.com", TEST_PASSWORD)

        detail = services.admin.account_detail(admin_actor, supplier.account.id)
        assert detail.active_binding is None
        assert detail.bindings == []

    def test_detail_requires_staff(self, services, customer):
        """Test that customers cannot read account detail."""
        actor = AuthContext(account_id=customer.account.id, role="customer", portal="customer")
        with pytest.raises(Forbidden):
            services.admin.account_detail(actor, customer.account.id)


class TestLoginHistory:
    """Tests for admin login history reads."""

    def test_history_shows_full_fingerprints(self, services, admin_actor, customer):
        """Test that admins see untruncated fingerprints."""
        long_fp = "f" * 64
        services.admin.reset_device_binding(admin_actor, customer.account.id)
        services.auth.login("customer", "buyer@example.com", TEST_PASSWORD, long_fp)

        history = services.admin.list_login_history(admin_actor, customer.account.id)
        assert history[0].presented_fingerprint == long_fp

    def test_history_is_newest_first_and_limited(self, services, admin_actor, customer):
        """Test ordering and the limit argument."""
        for _ in range(3):
            services.auth.login("customer", "buyer@example.com", TEST_PASSWORD, "fp-one")

        history = services.admin.list_login_history(admin_actor, customer.account.id, limit=2)
        assert len(history) == 2
        assert history[0].timestamp >= history[1].timestamp
