#!/usr/bin/env python3
"""
Unit tests for the reconciliation phases.

Runs provisioning, membership sync and deprovisioning against an in-memory
catalog and checks both the resulting state and what was left untouched.
"""

import os
import sys
import unittest

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from pg_ldap_sync.policy import SyncPolicy
from pg_ldap_sync.postgres_client import CatalogError, SavepointError
from pg_ldap_sync.reconciler import (
    Reconciler,
    plan_provisioning,
    plan_membership,
    plan_deprovisioning,
    merge_role_memberships
)
from fakes import FakeCatalog

DEFAULT_ROLE = 'g_ldapusers'
ADMINS = 'ldap_db_admins'
READONLY = 'ldap_readonly_users'


class TestPlanning(unittest.TestCase):
    """Test cases for the pure set-difference planners."""

    def test_plan_membership_is_disjoint_and_complete(self):
        desired = {'a', 'b', 'c'}
        actual = {'b', 'c', 'd', 'e'}
        plan = plan_membership(desired, actual)
        self.assertEqual(plan.to_grant, frozenset({'a'}))
        self.assertEqual(plan.to_revoke, frozenset({'d', 'e'}))
        self.assertFalse(plan.to_grant & plan.to_revoke)
        self.assertEqual((actual | plan.to_grant) - plan.to_revoke, desired)

    def test_plan_membership_noop(self):
        plan = plan_membership({'a'}, {'a'})
        self.assertTrue(plan.is_empty)

    def test_plan_provisioning(self):
        self.assertEqual(plan_provisioning({'a', 'b'}, {'b', 'z'}), frozenset({'a'}))

    def test_plan_deprovisioning(self):
        self.assertEqual(plan_deprovisioning({'a', 'b', 'c'}, {'b'}), frozenset({'a', 'c'}))
        self.assertEqual(plan_deprovisioning(set(), {'b'}), frozenset())

    def test_merge_role_memberships(self):
        merged = merge_role_memberships({
            ADMINS: frozenset({'nc_a', 'nc_b'}),
            READONLY: frozenset({'nc_b', 'nc_c'}),
        })
        self.assertEqual(merged, {'nc_a', 'nc_b', 'nc_c'})
        self.assertEqual(merge_role_memberships({}), set())


class TestReconciler(unittest.TestCase):
    """Test cases for Reconciler phases."""

    def setUp(self):
        self.policy = SyncPolicy(allowed_prefixes=('nc_',), default_role=DEFAULT_ROLE)
        self.timeouts = {'provisioning': 60, 'membership_sync': 30, 'deprovisioning': 30}
        self.reconciler = Reconciler(self.policy, self.timeouts)

    def _catalog(self, **kwargs):
        accounts = {'postgres', 'app_owner', DEFAULT_ROLE, ADMINS, READONLY}
        accounts |= set(kwargs.pop('accounts', ()))
        return FakeCatalog(accounts=accounts, **kwargs)

    # Provisioning

    def test_provision_creates_missing_accounts(self):
        catalog = self._catalog(accounts={'nc_bob'}, members={DEFAULT_ROLE: {'nc_bob'}})
        result = self.reconciler.provision(catalog, {'nc_alice', 'nc_bob'})

        self.assertEqual(result.created, ['nc_alice'])
        self.assertIn('nc_alice', catalog.accounts)
        self.assertIn('nc_alice', catalog.members[DEFAULT_ROLE])
        self.assertEqual(catalog.mutations, [('create', 'nc_alice'), ('grant', DEFAULT_ROLE, 'nc_alice')])
        self.assertEqual(catalog.timeouts, [60])

    def test_provision_is_idempotent(self):
        catalog = self._catalog()
        self.reconciler.provision(catalog, {'nc_alice'})
        catalog.mutations.clear()

        result = self.reconciler.provision(catalog, {'nc_alice'})
        self.assertEqual(result.created, [])
        self.assertEqual(catalog.mutations, [])

    def test_provision_refuses_unmanaged_names(self):
        catalog = self._catalog()
        result = self.reconciler.provision(catalog, {'nc_alice', 'mallory'})
        self.assertEqual(result.created, ['nc_alice'])
        self.assertNotIn('mallory', catalog.accounts)

    def test_provision_failure_rolls_back_everything(self):
        catalog = self._catalog(fail_on={('create', 'nc_bob')})
        with self.assertRaises(CatalogError):
            self.reconciler.provision(catalog, {'nc_alice', 'nc_bob', 'nc_carol'})

        self.assertNotIn('nc_alice', catalog.accounts)
        self.assertEqual(catalog.mutations, [])
        self.assertEqual(catalog.rollbacks, 1)

    def test_provision_skipped_without_prefixes(self):
        reconciler = Reconciler(SyncPolicy(allowed_prefixes=(), default_role=DEFAULT_ROLE))
        catalog = self._catalog()
        result = reconciler.provision(catalog, {'nc_alice'})
        self.assertTrue(result.skipped)
        self.assertEqual(catalog.mutations, [])

    # Membership sync

    def test_sync_grants_and_revokes(self):
        catalog = self._catalog(
            accounts={'nc_alice', 'nc_bob', 'nc_carol'},
            members={ADMINS: {'nc_bob', 'nc_carol'}}
        )
        result = self.reconciler.sync_role_membership(catalog, ADMINS, {'nc_alice', 'nc_bob'})

        self.assertEqual(result.granted, ['nc_alice'])
        self.assertEqual(result.revoked, ['nc_carol'])
        self.assertEqual(catalog.members[ADMINS], {'nc_alice', 'nc_bob'})
        self.assertEqual(catalog.timeouts, [30])
        self.assertEqual(catalog.queried_patterns, [['nc\\_%']])

    def test_sync_never_touches_unmanaged_members(self):
        catalog = self._catalog(
            accounts={'nc_alice'},
            members={ADMINS: {'app_owner', 'postgres', 'nc_alice'}}
        )
        result = self.reconciler.sync_role_membership(catalog, ADMINS, set())

        self.assertEqual(result.revoked, ['nc_alice'])
        self.assertEqual(catalog.members[ADMINS], {'app_owner', 'postgres'})

    def test_sync_ignores_desired_unmanaged_names(self):
        catalog = self._catalog(accounts={'mallory'})
        result = self.reconciler.sync_role_membership(catalog, ADMINS, {'mallory'})
        self.assertEqual(result.granted, [])
        self.assertEqual(catalog.mutations, [])

    def test_sync_already_matching(self):
        catalog = self._catalog(accounts={'nc_alice'}, members={ADMINS: {'nc_alice'}})
        result = self.reconciler.sync_role_membership(catalog, ADMINS, {'nc_alice'})
        self.assertEqual((result.granted, result.revoked), ([], []))
        self.assertEqual(catalog.mutations, [])

    def test_sync_failure_rolls_back_role(self):
        catalog = self._catalog(
            accounts={'nc_alice', 'nc_bob'},
            members={ADMINS: {'nc_bob'}},
            fail_on={('revoke', 'nc_bob')}
        )
        with self.assertRaises(CatalogError):
            self.reconciler.sync_role_membership(catalog, ADMINS, {'nc_alice'})

        self.assertEqual(catalog.members[ADMINS], {'nc_bob'})
        self.assertEqual(catalog.mutations, [])

    def test_sync_skipped_without_prefixes(self):
        reconciler = Reconciler(SyncPolicy(allowed_prefixes=(), default_role=DEFAULT_ROLE))
        catalog = self._catalog(members={ADMINS: {'nc_alice', 'postgres'}})
        result = reconciler.sync_role_membership(catalog, ADMINS, set())
        self.assertTrue(result.skipped)
        self.assertEqual(catalog.members[ADMINS], {'nc_alice', 'postgres'})
        self.assertEqual(catalog.queried_patterns, [])

    # Deprovisioning

    def test_deprovision_drops_stale_accounts(self):
        catalog = self._catalog(
            accounts={'nc_alice', 'nc_bob'},
            members={DEFAULT_ROLE: {'nc_alice', 'nc_bob', 'app_owner'}}
        )
        result = self.reconciler.deprovision(catalog, {'nc_alice'})

        self.assertEqual(result.dropped, ['nc_bob'])
        self.assertEqual(result.failures, [])
        self.assertNotIn('nc_bob', catalog.accounts)
        self.assertIn('app_owner', catalog.accounts)
        self.assertEqual(catalog.timeouts, [30])

    def test_deprovision_ignores_accounts_outside_default_role(self):
        catalog = self._catalog(accounts={'nc_manual'}, members={DEFAULT_ROLE: set()})
        result = self.reconciler.deprovision(catalog, set())
        self.assertEqual(result.dropped, [])
        self.assertIn('nc_manual', catalog.accounts)

    def test_deprovision_continues_after_failed_drop(self):
        catalog = self._catalog(
            accounts={'nc_a', 'nc_b', 'nc_c'},
            members={DEFAULT_ROLE: {'nc_a', 'nc_b', 'nc_c'}},
            owners={'nc_b'}
        )
        result = self.reconciler.deprovision(catalog, set())

        self.assertEqual(result.dropped, ['nc_a', 'nc_c'])
        self.assertEqual([failure.account for failure in result.failures], ['nc_b'])
        self.assertIn('depend', result.failures[0].error)
        self.assertEqual(catalog.accounts & {'nc_a', 'nc_b', 'nc_c'}, {'nc_b'})
        self.assertEqual(catalog.commits, 1)

    def test_deprovision_keeps_members_of_protected_roles(self):
        catalog = self._catalog(
            accounts={'nc_alice', 'nc_bob', 'nc_old'},
            members={
                DEFAULT_ROLE: {'nc_alice', 'nc_bob', 'nc_old'},
                ADMINS: {'nc_alice', 'postgres'},
            }
        )
        result = self.reconciler.deprovision(catalog, {'nc_bob'}, protected_roles={ADMINS})

        self.assertEqual(result.dropped, ['nc_old'])
        self.assertEqual(catalog.accounts & {'nc_alice', 'nc_bob', 'nc_old'}, {'nc_alice', 'nc_bob'})
        self.assertIn('postgres', catalog.accounts)

    def test_deprovision_aborts_when_savepoint_cannot_be_restored(self):
        catalog = self._catalog(
            accounts={'nc_a', 'nc_b', 'nc_c'},
            members={DEFAULT_ROLE: {'nc_a', 'nc_b', 'nc_c'}},
            fail_on={('savepoint', 'nc_b')}
        )
        with self.assertRaises(SavepointError):
            self.reconciler.deprovision(catalog, set())

        self.assertTrue({'nc_a', 'nc_b', 'nc_c'} <= catalog.accounts)
        self.assertEqual(catalog.commits, 0)
        self.assertEqual(catalog.rollbacks, 1)

    def test_deprovision_skipped_without_prefixes(self):
        reconciler = Reconciler(SyncPolicy(allowed_prefixes=(), default_role=DEFAULT_ROLE))
        catalog = self._catalog(accounts={'nc_a'}, members={DEFAULT_ROLE: {'nc_a', 'postgres'}})
        result = reconciler.deprovision(catalog, set())
        self.assertTrue(result.skipped)
        self.assertEqual(catalog.mutations, [])
        self.assertEqual(catalog.timeouts, [])


class TestReconcilerScenarios(unittest.TestCase):
    """Full three-phase passes over one database."""

    def setUp(self):
        self.reconciler = Reconciler(SyncPolicy(allowed_prefixes=('nc_',), default_role=DEFAULT_ROLE))

    def _run(self, catalog, memberships):
        valid = merge_role_memberships(memberships)
        self.reconciler.provision(catalog, valid)
        for role, desired in memberships.items():
            self.reconciler.sync_role_membership(catalog, role, desired)
        return self.reconciler.deprovision(catalog, valid)

    def test_new_user_is_onboarded(self):
        catalog = FakeCatalog(accounts={DEFAULT_ROLE, ADMINS})
        self._run(catalog, {ADMINS: frozenset({'nc_alice'})})

        self.assertIn('nc_alice', catalog.accounts)
        self.assertEqual(catalog.members[DEFAULT_ROLE], {'nc_alice'})
        self.assertEqual(catalog.members[ADMINS], {'nc_alice'})

    def test_user_moves_between_roles(self):
        catalog = FakeCatalog(
            accounts={DEFAULT_ROLE, ADMINS, READONLY, 'nc_alice'},
            members={DEFAULT_ROLE: {'nc_alice'}, ADMINS: {'nc_alice'}}
        )
        result = self._run(catalog, {ADMINS: frozenset(), READONLY: frozenset({'nc_alice'})})

        self.assertEqual(result.dropped, [])
        self.assertEqual(catalog.members[ADMINS], set())
        self.assertEqual(catalog.members[READONLY], {'nc_alice'})
        self.assertIn('nc_alice', catalog.accounts)

    def test_departed_user_is_removed(self):
        catalog = FakeCatalog(
            accounts={DEFAULT_ROLE, ADMINS, 'nc_alice', 'nc_bob'},
            members={DEFAULT_ROLE: {'nc_alice', 'nc_bob'}, ADMINS: {'nc_alice', 'nc_bob'}}
        )
        result = self._run(catalog, {ADMINS: frozenset({'nc_alice'})})

        self.assertEqual(result.dropped, ['nc_bob'])
        self.assertNotIn('nc_bob', catalog.accounts)
        self.assertEqual(catalog.members[ADMINS], {'nc_alice'})

    def test_initial_sync_with_several_prefixes(self):
        reconciler = Reconciler(SyncPolicy(allowed_prefixes=('nc_', 'admin_nc_'), default_role=DEFAULT_ROLE))
        catalog = FakeCatalog(accounts={DEFAULT_ROLE, ADMINS})
        members = frozenset({'nc_jdoe', 'admin_nc_asmith'})

        reconciler.provision(catalog, members)
        reconciler.sync_role_membership(catalog, ADMINS, members)

        self.assertEqual(catalog.members[ADMINS], {'nc_jdoe', 'admin_nc_asmith'})
        self.assertEqual(catalog.members[DEFAULT_ROLE], {'nc_jdoe', 'admin_nc_asmith'})

    def test_principal_in_two_groups_gets_both_roles(self):
        catalog = FakeCatalog(accounts={DEFAULT_ROLE, ADMINS, READONLY})
        self._run(catalog, {ADMINS: frozenset({'nc_testuser'}), READONLY: frozenset({'nc_testuser'})})

        self.assertEqual(catalog.members[ADMINS], {'nc_testuser'})
        self.assertEqual(catalog.members[READONLY], {'nc_testuser'})
        self.assertEqual(catalog.members[DEFAULT_ROLE], {'nc_testuser'})

    def test_removal_from_one_group_keeps_account(self):
        catalog = FakeCatalog(accounts={DEFAULT_ROLE, ADMINS, READONLY})
        self._run(catalog, {ADMINS: frozenset({'nc_testuser'}), READONLY: frozenset({'nc_testuser'})})

        result = self._run(catalog, {ADMINS: frozenset(), READONLY: frozenset({'nc_testuser'})})

        self.assertEqual(result.dropped, [])
        self.assertEqual(catalog.members[ADMINS], set())
        self.assertEqual(catalog.members[READONLY], {'nc_testuser'})
        self.assertIn('nc_testuser', catalog.members[DEFAULT_ROLE])

    def test_deleted_group_deprovisions_its_members(self):
        catalog = FakeCatalog(accounts={DEFAULT_ROLE, ADMINS, READONLY})
        self._run(catalog, {ADMINS: frozenset({'nc_jdoe'}), READONLY: frozenset({'nc_bcarter'})})

        result = self._run(catalog, {ADMINS: frozenset({'nc_jdoe'}), READONLY: frozenset()})

        self.assertEqual(result.dropped, ['nc_bcarter'])
        self.assertNotIn('nc_bcarter', catalog.accounts)
        self.assertIn('nc_jdoe', catalog.accounts)

    def test_second_pass_is_a_noop(self):
        catalog = FakeCatalog(
            accounts={DEFAULT_ROLE, ADMINS, 'nc_bob', 'postgres'},
            members={DEFAULT_ROLE: {'nc_bob'}, ADMINS: {'postgres'}}
        )
        memberships = {ADMINS: frozenset({'nc_alice'})}
        self._run(catalog, memberships)
        catalog.mutations.clear()

        self._run(catalog, memberships)
        self.assertEqual(catalog.mutations, [])


if __name__ == '__main__':
    unittest.main()
