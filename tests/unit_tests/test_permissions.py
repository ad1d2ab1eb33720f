"""
Unit tests for temporary elevated access.
"""

import unittest
from unittest.mock import MagicMock

from errors import ArmRequestError, ElevatedAccessError
from models import ServerTopology
from permissions import ElevatedAccess, assignment_name, resource_group_scope


def topology(name, resource_group):
    return ServerTopology(
        name=name,
        endpoint_address="",
        resource_group=resource_group,
        subscription_id="sub-1",
        region="eastus",
        product_token="acme",
        tier_token="prod",
        environment_token="qa2",
    )


class TestElevatedAccess(unittest.TestCase):
    """Test grant and revoke of role assignments."""

    def setUp(self):
        self.api = MagicMock()
        self.access = ElevatedAccess(self.api, "principal-1", ["role-a", "role-b"])

    def test_assignment_name_is_deterministic(self):
        scope = "/subscriptions/sub-1/resourceGroups/rg"
        self.assertEqual(
            assignment_name(scope, "role-a", "principal-1"),
            assignment_name(scope.upper(), "role-a", "principal-1"),
        )
        self.assertNotEqual(
            assignment_name(scope, "role-a", "principal-1"),
            assignment_name(scope, "role-b", "principal-1"),
        )

    def test_scopes_deduplicated(self):
        scopes = ElevatedAccess.scopes(
            [topology("a", "rg-one"), topology("b", "RG-ONE"), None, topology("c", "rg-two")]
        )
        self.assertEqual(
            scopes,
            [
                "/subscriptions/sub-1/resourceGroups/rg-one",
                "/subscriptions/sub-1/resourceGroups/rg-two",
            ],
        )
        self.assertEqual(resource_group_scope(topology("a", "rg")), "/subscriptions/sub-1/resourceGroups/rg")

    def test_dry_run_grant_plans_only(self):
        planned = self.access.grant(["/scope/1", "/scope/2"], dry_run=True)

        self.assertEqual(planned, 4)
        self.api.create_role_assignment.assert_not_called()
        self.assertEqual(self.access.granted, [])

    def test_grant_and_revoke(self):
        self.access.grant(["/scope/1"], dry_run=False)

        self.assertEqual(self.api.create_role_assignment.call_count, 2)
        self.assertEqual(len(self.access.granted), 2)

        self.assertEqual(self.access.revoke(), 2)
        self.assertEqual(self.api.delete_role_assignment.call_count, 2)
        self.assertEqual(self.access.granted, [])

    def test_grant_failure_raises(self):
        self.api.create_role_assignment.side_effect = ArmRequestError("forbidden", 403)

        with self.assertRaises(ElevatedAccessError):
            self.access.grant(["/scope/1"], dry_run=False)

    def test_revoke_attempts_all_before_raising(self):
        self.access.grant(["/scope/1"], dry_run=False)
        self.api.delete_role_assignment.side_effect = [ArmRequestError("boom", 500), None]

        with self.assertRaises(ElevatedAccessError):
            self.access.revoke()

        self.assertEqual(self.api.delete_role_assignment.call_count, 2)
        self.assertEqual(self.access.granted, [])


if __name__ == "__main__":
    unittest.main()
