"""Tests for the enrollment merge engine."""

import unittest
from datetime import datetime, timezone

from kantine_device.merge import apply_delta, merge_delta
from kantine_device.models import MAX_TEAMS, DomainModel, EnrollmentDelta, Role, Team, Tenant

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def grant(slug, team_ids, role=Role.MANAGER, token="signed-token", email=None):
    """Build a delta granting ``team_ids`` of ``slug`` with ``role``."""
    teams = tuple(
        Team(id=tid, name=f"Team {tid}", role=role, code=f"C-{tid}", email=email, enrolled_at=NOW)
        for tid in team_ids
    )
    return EnrollmentDelta(tenant_slug=slug, tenant_name=slug.title(), teams=teams, signed_device_token=token)


class TestMergeDelta(unittest.TestCase):
    """Test merging grants into the domain model."""

    def setUp(self):
        self.empty = DomainModel.empty(device_id="device-1", now=NOW)

    def test_merge_into_empty_model(self):
        result = merge_delta(self.empty, grant("acme", ["A", "B"]), now=NOW)
        model = result.model

        self.assertEqual([t.id for t in model.tenants["acme"].teams], ["A", "B"])
        self.assertEqual(len(model.enrollments), 1)
        self.assertEqual(model.tenants["acme"].enrollments, (result.enrollment_id,))
        self.assertEqual(model.tenants["acme"].signed_device_token, "signed-token")
        self.assertFalse(result.truncated)
        self.assertEqual(model.validate(), [])

    def test_inputs_are_not_mutated(self):
        merge_delta(self.empty, grant("acme", ["A"]), now=NOW)
        self.assertEqual(self.empty.tenants, {})
        self.assertEqual(self.empty.enrollments, {})

    def test_enrollment_id_is_used(self):
        result = merge_delta(self.empty, grant("acme", ["A"]), enrollment_id="e-1", now=NOW)
        self.assertEqual(result.enrollment_id, "e-1")
        enrollment = result.model.enrollments["e-1"]
        self.assertEqual(enrollment.teams, ("A",))
        self.assertEqual(enrollment.role, Role.MANAGER)
        self.assertEqual(enrollment.enrolled_at, NOW)

    def test_same_delta_twice_records_two_enrollments(self):
        delta = grant("acme", ["A", "B"])
        once = apply_delta(self.empty, delta, now=NOW)
        twice = apply_delta(once, delta, now=NOW)

        # Teams are deduplicated, but the grant itself is recorded again.
        self.assertEqual([t.id for t in twice.tenants["acme"].teams], ["A", "B"])
        self.assertEqual(len(twice.enrollments), 2)
        self.assertEqual(len(twice.tenants["acme"].enrollments), 2)

    def test_manager_grant_supersedes_member(self):
        model = apply_delta(self.empty, grant("acme", ["T"], role=Role.MEMBER), now=NOW)
        model = apply_delta(model, grant("acme", ["T"], role=Role.MANAGER, email="coach@example.com"), now=NOW)

        teams = model.tenants["acme"].teams
        self.assertEqual(len(teams), 1)
        self.assertEqual(teams[0].role, Role.MANAGER)
        self.assertEqual(teams[0].email, "coach@example.com")

    def test_manager_grant_at_capacity_replaces_member_entry(self):
        model = apply_delta(self.empty, grant("acme", ["T1", "T2", "T3", "T4", "T5"], role=Role.MEMBER), now=NOW)
        result = merge_delta(model, grant("acme", ["T3"], role=Role.MANAGER), now=NOW)

        self.assertEqual(result.model.total_team_count, MAX_TEAMS)
        self.assertFalse(result.truncated)
        self.assertEqual(result.model.tenants["acme"].team("T3").role, Role.MANAGER)

    def test_member_grant_does_not_downgrade_manager(self):
        model = apply_delta(self.empty, grant("acme", ["T"], role=Role.MANAGER), now=NOW)
        model = apply_delta(model, grant("acme", ["T"], role=Role.MEMBER), now=NOW)

        teams = model.tenants["acme"].teams
        self.assertEqual(len(teams), 1)
        self.assertEqual(teams[0].role, Role.MANAGER)

    def test_capacity_truncates_in_delta_order(self):
        model = apply_delta(self.empty, grant("acme", ["A", "B", "C"]), now=NOW)
        result = merge_delta(model, grant("beta", ["X", "Y", "Z"]), now=NOW)

        self.assertEqual([t.id for t in result.admitted], ["X", "Y"])
        self.assertEqual([t.id for t in result.dropped], ["Z"])
        self.assertTrue(result.truncated)
        self.assertEqual(result.model.total_team_count, MAX_TEAMS)
        self.assertEqual(result.model.enrollments[result.enrollment_id].teams, ("X", "Y"))

    def test_capacity_never_exceeded_across_merges(self):
        model = self.empty
        for index in range(4):
            slug = f"club{index}"
            model = apply_delta(model, grant(slug, [f"{slug}-1", f"{slug}-2"]), now=NOW)
            self.assertLessEqual(model.total_team_count, MAX_TEAMS)
        self.assertEqual(model.total_team_count, MAX_TEAMS)

    def test_full_model_still_records_tenant_shell(self):
        model = apply_delta(self.empty, grant("acme", ["A", "B", "C", "D", "E"]), now=NOW)
        result = merge_delta(model, grant("beta", ["X"]), now=NOW)

        self.assertEqual(result.admitted, ())
        self.assertIn("beta", result.model.tenants)
        self.assertEqual(result.model.tenants["beta"].teams, ())
        self.assertEqual(result.model.total_team_count, MAX_TEAMS)

    def test_zero_team_delta_creates_tenant(self):
        result = merge_delta(self.empty, grant("acme", []), now=NOW)
        tenant = result.model.tenants["acme"]
        self.assertEqual(tenant.teams, ())
        self.assertEqual(tenant.signed_device_token, "signed-token")
        self.assertEqual(result.model.enrollments[result.enrollment_id].teams, ())

    def test_delta_without_token_keeps_existing_token(self):
        model = apply_delta(self.empty, grant("acme", ["A"], token="first"), now=NOW)
        model = apply_delta(model, grant("acme", ["B"], token=None), now=NOW)
        self.assertEqual(model.tenants["acme"].signed_device_token, "first")

    def test_new_token_reactivates_season_ended_tenant(self):
        ended = Tenant(slug="acme", name="Acme", teams=(), season_ended=True)
        model = self.empty.with_changes(now=NOW, tenants={"acme": ended})

        model = apply_delta(model, grant("acme", ["A"], token="renewed"), now=NOW)

        tenant = model.tenants["acme"]
        self.assertFalse(tenant.season_ended)
        self.assertEqual(tenant.signed_device_token, "renewed")

    def test_season_ended_tenant_without_new_token_stays_revoked(self):
        ended = Tenant(slug="acme", name="Acme", teams=(), season_ended=True)
        model = self.empty.with_changes(now=NOW, tenants={"acme": ended})

        model = apply_delta(model, grant("acme", ["A"], token=None), now=NOW)

        tenant = model.tenants["acme"]
        self.assertTrue(tenant.season_ended)
        self.assertIsNone(tenant.signed_device_token)
        self.assertEqual(model.validate(), [])


class TestMergeScenarios(unittest.TestCase):
    """End-to-end merge sequences."""

    def test_manager_then_member_grant(self):
        model = DomainModel.empty(device_id="device-1", now=NOW)

        model = apply_delta(model, grant("acme", ["T1", "T2"], role=Role.MANAGER), now=NOW)
        self.assertEqual(len(model.tenants["acme"].teams), 2)
        self.assertEqual(len(model.enrollments), 1)

        model = apply_delta(model, grant("acme", ["T1"], role=Role.MEMBER), now=NOW)
        teams = model.tenants["acme"].teams
        self.assertEqual([t.id for t in teams].count("T1"), 1)
        self.assertEqual(model.tenants["acme"].team("T1").role, Role.MANAGER)
        self.assertEqual(model.total_team_count, 2)

    def test_grant_over_capacity_admits_one(self):
        model = DomainModel.empty(device_id="device-1", now=NOW)
        model = apply_delta(model, grant("alpha", ["A1", "A2"]), now=NOW)
        model = apply_delta(model, grant("beta", ["B1", "B2"]), now=NOW)
        self.assertEqual(model.total_team_count, 4)

        result = merge_delta(model, grant("gamma", ["G1", "G2", "G3"]), now=NOW)

        self.assertEqual(len(result.admitted), 1)
        self.assertEqual(result.admitted[0].id, "G1")
        self.assertEqual(result.model.total_team_count, 5)


if __name__ == '__main__':
    unittest.main()
