"""Tests for per-account device binding.

Covers first-use binding, repeat verification, fail-closed mismatches,
advisory IP warnings, admin resets and the concurrent first-bind race.
"""

import threading

import pytest

from quoteauth.service.devices import BindingOutcome, DeviceBindingManager
from quoteauth.storage.errors import ConstraintViolation
from quoteauth.storage.models import DeviceBinding


@pytest.fixture
def account(store):
    return store.create_account("buyer@example.com", role="customer", status="active")


class TestBindOrVerify:
    """Tests for first and repeat use of a device."""

    def test_first_use_binds_device(self, services, account):
        """Test that the first fingerprint becomes the active binding."""
        result = services.devices.bind_or_verify(
            account.id, "fp-one", "10.0.0.1", {"ua": "Firefox"}
        )

        assert result.outcome == BindingOutcome.BOUND_NEW
        active = services.store.get_active_binding(account.id)
        assert active.fingerprint == "fp-one"
        assert active.registered_ip == "10.0.0.1"
        assert active.browser_info == {"ua": "Firefox"}

    def test_same_fingerprint_verifies(self, services, account):
        """Test that repeat use of the bound fingerprint succeeds."""
        services.devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")
        result = services.devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")

        assert result.outcome == BindingOutcome.BOUND_EXISTING
        assert result.ip_mismatch is False
        assert len(services.devices.history(account.id)) == 1

    def test_ip_change_only_warns(self, services, account):
        """Test that a new IP on a matching fingerprint is advisory."""
        services.devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")
        result = services.devices.bind_or_verify(account.id, "fp-one", "192.168.1.7")

        assert result.ok
        assert result.ip_mismatch is True

    def test_other_fingerprint_fails_closed(self, services, account):
        """Test that a different fingerprint is a mismatch and binds nothing."""
        services.devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")
        result = services.devices.bind_or_verify(account.id, "fp-two", "10.0.0.1")

        assert result.outcome == BindingOutcome.MISMATCH
        assert not result.ok
        assert services.store.get_active_binding(account.id).fingerprint == "fp-one"

    def test_missing_fingerprint_is_mismatch(self, services, account):
        """Test that an absent fingerprint never creates a binding."""
        result = services.devices.bind_or_verify(account.id, None, "10.0.0.1")

        assert result.outcome == BindingOutcome.MISMATCH
        assert services.store.get_active_binding(account.id) is None

    def test_verify_never_binds(self, services, account):
        """Test that verify fails closed when nothing is bound yet."""
        result = services.devices.verify(account.id, "fp-one")

        assert not result.ok
        assert services.store.get_active_binding(account.id) is None


class TestFirstBindRace:
    """Tests for concurrent first logins."""

    def test_store_rejects_second_active_binding(self, store, account):
        """Test that the store enforces one active binding per account."""
        store.create_active_binding(DeviceBinding.new(account.id, "fp-one"))
        with pytest.raises(ConstraintViolation):
            store.create_active_binding(DeviceBinding.new(account.id, "fp-two"))

    def test_concurrent_first_binds_leave_one_winner(self, services, account):
        """Test that racing fingerprints never both bind."""
        fingerprints = [f"fp-{i}" for i in range(8)]
        barrier = threading.Barrier(len(fingerprints))
        results = {}

        def attempt(fp):
            barrier.wait()
            results[fp] = services.devices.bind_or_verify(account.id, fp, "10.0.0.1")

        threads = [threading.Thread(target=attempt, args=(fp,)) for fp in fingerprints]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [fp for fp, result in results.items() if result.ok]
        assert len(winners) == 1
        active = [b for b in services.devices.history(account.id) if b.is_active]
        assert len(active) == 1
        assert active[0].fingerprint == winners[0]

    def test_lost_race_is_judged_against_winner(self, store, account):
        """Test that a writer losing the insert re-reads and verifies."""

        class RacingStore:
            """Store whose first insert loses to a concurrent identical bind."""

            def __init__(self, inner):
                self.inner = inner
                self.raced = False

            def __getattr__(self, name):
                return getattr(self.inner, name)

            def create_active_binding(self, binding):
                if not self.raced:
                    self.raced = True
                    self.inner.create_active_binding(
                        DeviceBinding.new(binding.account_id, binding.fingerprint)
                    )
                return self.inner.create_active_binding(binding)

        devices = DeviceBindingManager(RacingStore(store))
        result = devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")

        assert result.outcome == BindingOutcome.BOUND_EXISTING


class TestReset:
    """Tests for admin-driven device resets."""

    def test_reset_moves_binding_to_history(self, services, account):
        """Test that reset deactivates with audit metadata."""
        services.devices.bind_or_verify(account.id, "fp-one", "10.0.0.1")
        previous = services.devices.reset(
            account.id, reason="lost laptop", performed_by="admin-1"
        )

        assert previous.fingerprint == "fp-one"
        assert services.store.get_active_binding(account.id) is None
        history = services.devices.history(account.id)
        assert history[0].is_active is False
        assert history[0].deactivated_by == "admin-1"
        assert history[0].deactivation_reason == "lost laptop"
        assert history[0].deactivated_at is not None

    def test_reset_revokes_refresh_tokens(self, services, account):
        """Test that a reset leaves no live refresh token behind."""
        services.devices.bind_or_verify(account.id, "fp-one")
        services.tokens.issue(account)
        services.tokens.issue(account)

        services.devices.reset(account.id)

        tokens = services.store.list_refresh_tokens(account.id)
        assert tokens and all(t.revoked for t in tokens)
        assert {t.revoked_reason for t in tokens} == {"device_reset"}

    def test_next_bind_after_reset_creates_new_binding(self, services, account):
        """Test that any fingerprint binds after a reset."""
        services.devices.bind_or_verify(account.id, "fp-one")
        services.devices.reset(account.id)
        result = services.devices.bind_or_verify(account.id, "fp-two")

        assert result.outcome == BindingOutcome.BOUND_NEW
        assert len(services.devices.history(account.id)) == 2

    def test_reset_without_binding_still_revokes(self, services, account):
        """Test that resetting an unbound account is not an error."""
        services.tokens.issue(account)

        assert services.devices.reset(account.id) is None
        assert all(t.revoked for t in services.store.list_refresh_tokens(account.id))

    def test_reset_requires_revoker(self, store, account):
        """Test that reset refuses to run without token revocation wired."""
        with pytest.raises(RuntimeError):
            DeviceBindingManager(store).reset(account.id)
