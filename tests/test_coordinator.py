"""Tests for the enrollment coordinator."""

import shutil
import tempfile
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

from cryptography.fernet import Fernet

from kantine_device.api import ReconciliationSummary, TeamSummary
from kantine_device.cache import CacheKey, CacheStatus, TieredCache
from kantine_device.coordinator import EnrollmentCoordinator, StateContainer
from kantine_device.encryption import TokenCipher
from kantine_device.errors import (
    DuplicateSubmissionError,
    KantineError,
    TokenRevokedError,
    TransientAPIError,
)
from kantine_device.models import EnrollmentDelta, Role, Team, TenantInfo
from kantine_device.reconciliation import ReconcileOutcome, ReconciliationService
from kantine_device.store import ModelStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def grant(slug, team_ids, role=Role.MANAGER, token="signed-token"):
    teams = tuple(Team(id=tid, name=tid, role=role, code=f"C-{tid}", enrolled_at=NOW) for tid in team_ids)
    return EnrollmentDelta(tenant_slug=slug, tenant_name=slug.title(), teams=teams, signed_device_token=token)


class CoordinatorTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.cipher = TokenCipher(self.temp_dir / "key", encryption_key=Fernet.generate_key())
        self.store = ModelStore(self.temp_dir / "home", cipher=self.cipher)
        self.backend = Mock()
        self.backend.fetch_tenant_info.return_value = []
        self.backend.sync_enrollments.return_value = ReconciliationSummary()
        self.audit = Mock()
        self.cache = TieredCache(self.temp_dir / "cache")
        self.coordinator = EnrollmentCoordinator(
            self.backend,
            StateContainer(self.store),
            self.cache,
            ReconciliationService(self.backend, min_interval=3600),
            audit=self.audit,
            hardware_identifier="hw-1",
            fresh_data_timeout=5.0,
            push_retry_delay=0.01,
        )

    def tearDown(self):
        self.coordinator.close()
        shutil.rmtree(self.temp_dir)

    def enroll(self, delta):
        self.backend.register_device.return_value = delta
        result = self.coordinator.complete_enrollment(f"token-{delta.tenant_slug}-{len(delta.teams)}")
        self.assertTrue(self.coordinator.wait_for_fresh_data())
        return result


class TestEnrollment(CoordinatorTestCase):
    """Test enrollment completion."""

    def test_complete_enrollment_persists_merge(self):
        result = self.enroll(grant("acme", ["T1", "T2"]))

        self.backend.register_device.assert_called_once_with(
            "token-acme-2", push_token=None, hardware_identifier="hw-1"
        )
        self.assertEqual(self.coordinator.model.total_team_count, 2)
        self.assertEqual(self.store.load(), self.coordinator.model)
        self.assertEqual(result.model, self.coordinator.model)
        self.backend.fetch_tenant_info.assert_called_with("signed-token")
        self.audit.log_enrollment.assert_called_once()

    def test_truncation_is_reported(self):
        self.enroll(grant("acme", ["A", "B", "C", "D"]))
        result = self.enroll(grant("beta", ["X", "Y"]))
        self.assertEqual([t.id for t in result.dropped], ["Y"])
        self.assertEqual(self.coordinator.model.total_team_count, 5)

    def test_duplicate_submission_is_rejected(self):
        started = threading.Event()
        release = threading.Event()

        def slow_register(token, push_token=None, hardware_identifier=None):
            started.set()
            release.wait(5)
            return grant("acme", ["T1"])

        self.backend.register_device.side_effect = slow_register
        worker = threading.Thread(target=self.coordinator.complete_enrollment, args=("same-token",))
        worker.start()
        self.assertTrue(started.wait(5))

        with self.assertRaises(DuplicateSubmissionError):
            self.coordinator.complete_enrollment("same-token")
        release.set()
        worker.join(5)

        self.assertEqual(self.backend.register_device.call_count, 1)
        self.assertEqual(len(self.coordinator.model.enrollments), 1)

    def test_failed_enrollment_clears_pending_token(self):
        self.backend.register_device.side_effect = [TransientAPIError("Request timeout"), grant("acme", ["T1"])]

        with self.assertRaises(TransientAPIError):
            self.coordinator.complete_enrollment("retry-token")
        self.assertFalse(self.coordinator.model.is_enrolled)

        self.coordinator.complete_enrollment("retry-token")
        self.assertTrue(self.coordinator.model.is_enrolled)

    def test_register_member(self):
        self.backend.register_member.return_value = grant("acme", ["T1"], role=Role.MEMBER)
        result = self.coordinator.register_member("acme", "Acme", ["T1"])
        self.assertEqual(result.model.tenants["acme"].team("T1").role, Role.MEMBER)
        self.backend.register_member.assert_called_once_with(
            "acme", "Acme", ["T1"], push_token=None, hardware_identifier="hw-1"
        )

    def test_request_enrollment_link_leaves_model_untouched(self):
        self.backend.fetch_allowed_teams.return_value = [TeamSummary(id="t1", name="JO11-1", code="JO11-1")]

        teams = self.coordinator.allowed_teams("coach@example.com", "acme")
        self.coordinator.request_enrollment_link("coach@example.com", "acme", ["JO11-1"])

        self.assertEqual([t.code for t in teams], ["JO11-1"])
        self.backend.request_enrollment.assert_called_once_with("coach@example.com", "acme", ["JO11-1"])
        self.assertFalse(self.coordinator.model.is_enrolled)

    def test_request_enrollment_link_propagates_errors(self):
        self.backend.request_enrollment.side_effect = TransientAPIError("Connection error")
        with self.assertRaises(TransientAPIError):
            self.coordinator.request_enrollment_link("coach@example.com", "acme", ["JO11-1"])


class TestRemoval(CoordinatorTestCase):
    """Test local-first removal."""

    def setUp(self):
        super().setUp()
        self.enroll(grant("acme", ["T1", "T2"], token="token-acme"))
        self.enroll(grant("beta", ["B1"], token="token-beta"))

    def test_remove_team(self):
        self.cache.put(CacheKey.leaderboard("acme", team_id="T1"), {}, 300)
        self.cache.put(CacheKey.leaderboard("acme"), {}, 300)

        self.assertTrue(self.coordinator.remove_team("acme", "T1"))

        self.backend.remove_teams.assert_called_once_with(["C-T1"], "token-acme", tenant_slug="acme")
        self.assertIsNone(self.store.load().tenants["acme"].team("T1"))
        self.assertFalse(self.cache.get(CacheKey.leaderboard("acme", team_id="T1")).is_hit)
        self.assertTrue(self.cache.get(CacheKey.leaderboard("acme")).is_hit)

    def test_remove_team_survives_backend_failure(self):
        self.backend.remove_teams.side_effect = TransientAPIError("Connection error")
        self.assertFalse(self.coordinator.remove_team("acme", "T1"))
        self.assertIsNone(self.coordinator.model.tenants["acme"].team("T1"))
        self.audit.log_removal.assert_called_with("acme", team="T1", backend_notified=False)

    def test_remove_unknown_team(self):
        with self.assertRaises(KantineError):
            self.coordinator.remove_team("acme", "nope")
        self.backend.remove_teams.assert_not_called()

    def test_remove_last_team_removes_tenant(self):
        self.cache.put(CacheKey.tenant_info("beta"), {}, 300)
        self.coordinator.remove_team("beta", "B1")
        self.assertNotIn("beta", self.coordinator.model.tenants)
        self.assertFalse(self.cache.get(CacheKey.tenant_info("beta")).is_hit)

    def test_remove_tenant(self):
        self.cache.put(CacheKey.leaderboard("acme"), {}, 300)
        self.assertTrue(self.coordinator.remove_tenant("acme"))
        self.backend.remove_tenant.assert_called_once_with("acme", "token-acme")
        self.assertNotIn("acme", self.store.load().tenants)
        self.assertFalse(self.cache.get(CacheKey.leaderboard("acme")).is_hit)

    def test_reset_all_keeps_device_identity(self):
        self.coordinator.set_push_token("push-1")
        device_id = self.coordinator.model.device_id

        self.coordinator.reset_all()

        model = self.coordinator.model
        self.assertFalse(model.is_enrolled)
        self.assertEqual(model.device_id, device_id)
        self.assertEqual(model.push_token, "push-1")
        self.backend.remove_all_enrollments.assert_called_once_with("token-acme")


class TestAuthorization(CoordinatorTestCase):
    """Test routing of authorization failures to the lifecycle."""

    def setUp(self):
        super().setUp()
        self.enroll(grant("acme", ["T1"], token="token-acme"))

    def test_revoked_token_revokes_tenant(self):
        revoked = self.coordinator.handle_auth_failure("acme", TokenRevokedError("revoked", reason="manual"))

        self.assertTrue(revoked)
        tenant = self.store.load().tenants["acme"]
        self.assertTrue(tenant.season_ended)
        self.assertIsNone(tenant.signed_device_token)
        self.assertEqual(len(tenant.teams), 1)
        self.audit.log_revocation.assert_called_once_with("acme", "token_revoked", "manual")

    def test_transient_failure_keeps_tenant(self):
        self.assertFalse(self.coordinator.handle_auth_failure("acme", TransientAPIError("Unauthorized", 401)))
        self.assertFalse(self.coordinator.model.tenants["acme"].season_ended)

    def test_refresh_revokes_on_token_revoked(self):
        self.backend.fetch_tenant_info.side_effect = TokenRevokedError("revoked")
        self.coordinator.refresh_tenant_info(force=True)
        self.assertTrue(self.coordinator.model.tenants["acme"].season_ended)

    def test_refresh_applies_season_end(self):
        self.backend.fetch_tenant_info.return_value = [TenantInfo(slug="acme", name="Acme", season_ended=True)]
        infos = self.coordinator.refresh_tenant_info(force=True)
        self.assertEqual([info.slug for info in infos], ["acme"])
        self.assertTrue(self.coordinator.model.tenants["acme"].season_ended)
        self.assertIsNone(self.coordinator.model.primary_auth_token)

    def test_refresh_serves_fresh_cache(self):
        self.cache.put(CacheKey.ALL_TENANT_INFO, [{"slug": "acme", "name": "Acme"}], 3600)
        self.backend.fetch_tenant_info.reset_mock()

        infos = self.coordinator.refresh_tenant_info()

        self.assertEqual(infos[0].name, "Acme")
        self.backend.fetch_tenant_info.assert_not_called()

    def test_refresh_failure_returns_cached(self):
        self.cache.put(CacheKey.ALL_TENANT_INFO, [{"slug": "acme", "name": "Acme"}], 3600)
        self.backend.fetch_tenant_info.side_effect = TransientAPIError("Server error (HTTP 503)")
        infos = self.coordinator.refresh_tenant_info(force=True)
        self.assertEqual([info.slug for info in infos], ["acme"])
        self.assertFalse(self.coordinator.model.tenants["acme"].season_ended)


class TestReadPaths(CoordinatorTestCase):
    """Test cached reads and reconciliation wiring."""

    def setUp(self):
        super().setUp()
        self.enroll(grant("acme", ["T1"], token="token-acme"))

    def test_leaderboard_miss_fetches_and_caches(self):
        self.backend.fetch_leaderboard.return_value = {"teams": [{"rank": 1, "name": "T1", "points": 10}]}

        first = self.coordinator.get_leaderboard("acme")
        second = self.coordinator.get_leaderboard("acme")

        self.assertEqual(first.status, CacheStatus.FRESH)
        self.assertEqual(second.data, first.data)
        self.backend.fetch_leaderboard.assert_called_once_with(
            "acme", token="token-acme", period="season", team_id=None
        )

    def test_leaderboard_failure_is_miss(self):
        self.backend.fetch_leaderboard.side_effect = TransientAPIError("Request timeout")
        self.assertEqual(self.coordinator.get_leaderboard("acme").status, CacheStatus.MISS)

    def test_reconcile_sends_snapshot(self):
        result = self.coordinator.reconcile(force=True)
        self.assertEqual(result.outcome, ReconcileOutcome.SUCCEEDED)
        snapshot, token = self.backend.sync_enrollments.call_args[0]
        self.assertEqual(token, "token-acme")
        self.assertEqual(snapshot[0].hardware_identifier, "hw-1")
        self.assertEqual(snapshot[0].team_codes, ("C-T1",))

    def test_on_foreground_reconciles_once(self):
        self.coordinator.on_foreground().result(5)
        self.coordinator.on_foreground().result(5)
        self.assertEqual(self.backend.sync_enrollments.call_count, 1)


class TestPushToken(CoordinatorTestCase):
    """Test push token registration and retry."""

    def test_deferred_until_enrolled(self):
        self.coordinator.set_push_token("push-1")
        self.assertEqual(self.store.load().push_token, "push-1")
        self.backend.update_push_token.assert_not_called()

    def test_registered_after_enrollment(self):
        self.coordinator.set_push_token("push-1")
        self.enroll(grant("acme", ["T1"], token="token-acme"))
        self.coordinator.close()
        self.backend.update_push_token.assert_called_with("push-1", "token-acme")

    def test_failed_registration_is_retried(self):
        self.enroll(grant("acme", ["T1"], token="token-acme"))
        self.backend.update_push_token.side_effect = [TransientAPIError("Connection error"), None]

        self.coordinator.set_push_token("push-1")

        deadline = time.monotonic() + 5
        while self.backend.update_push_token.call_count < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(self.backend.update_push_token.call_count, 2)
        self.audit.log_push_token.assert_called_with("push-1", True)

    def test_close_cancels_retry(self):
        self.enroll(grant("acme", ["T1"], token="token-acme"))
        self.coordinator.push_retry_delay = 60
        self.backend.update_push_token.side_effect = TransientAPIError("Connection error")

        self.coordinator.set_push_token("push-1")
        self.coordinator.close()

        self.assertEqual(self.backend.update_push_token.call_count, 1)
        self.assertIsNone(self.coordinator._push_timer)


if __name__ == '__main__':
    unittest.main()
