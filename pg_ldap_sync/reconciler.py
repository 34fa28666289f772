"""
Reconciliation of PostgreSQL roles against resolved LDAP membership.

A pass over one database runs three phases in order, each in its own
transaction:

1. Provisioning: create login roles for every valid account that does not
   exist yet and grant them the default role.
2. Membership sync: per target role, grant the role to desired accounts that
   lack it and revoke it from managed members that are no longer desired.
3. Deprovisioning: drop managed members of the default role that are no
   longer in any mapped group.

Every phase is derived from a set difference between a desired and an actual
view and only ever touches accounts the sync policy allows.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, FrozenSet, Iterable, List, Optional, Set

from pg_ldap_sync.logging_setup import audit_logger
from pg_ldap_sync.policy import SyncPolicy
from pg_ldap_sync.postgres_client import CatalogError, SavepointError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MembershipPlan:
    """Grants and revokes needed for one role. The two sets are disjoint."""
    to_grant: FrozenSet[str]
    to_revoke: FrozenSet[str]

    @property
    def is_empty(self) -> bool:
        return not self.to_grant and not self.to_revoke


@dataclass
class ProvisionResult:
    created: List[str] = field(default_factory=list)
    skipped: bool = False


@dataclass
class MembershipResult:
    role: str
    granted: List[str] = field(default_factory=list)
    revoked: List[str] = field(default_factory=list)
    skipped: bool = False


@dataclass
class DropFailure:
    """An account that could not be dropped this pass."""
    account: str
    error: str


@dataclass
class DeprovisionResult:
    dropped: List[str] = field(default_factory=list)
    failures: List[DropFailure] = field(default_factory=list)
    skipped: bool = False


def plan_provisioning(valid: Iterable[str], existing: Iterable[str]) -> FrozenSet[str]:
    """Accounts that are entitled to exist but do not."""
    return frozenset(valid) - frozenset(existing)


def plan_membership(desired: Iterable[str], actual: Iterable[str]) -> MembershipPlan:
    """Set differences between desired and actual role members."""
    desired = frozenset(desired)
    actual = frozenset(actual)
    return MembershipPlan(to_grant=desired - actual, to_revoke=actual - desired)


def plan_deprovisioning(managed: Iterable[str], valid: Iterable[str]) -> FrozenSet[str]:
    """Managed accounts that are no longer entitled to exist."""
    return frozenset(managed) - frozenset(valid)


class Reconciler:
    """
    Applies the three reconciliation phases to one database.

    Args:
        policy: Sync policy for the pass
        timeouts: Per-phase statement timeouts in seconds, keyed by
            'provisioning', 'membership_sync' and 'deprovisioning'
    """

    def __init__(self, policy: SyncPolicy, timeouts: Optional[Dict[str, Any]] = None):
        self.policy = policy
        self.timeouts = timeouts or {}

    def _gate(self, principals: Iterable[str], phase: str) -> FrozenSet[str]:
        """Apply the policy filter and report anything it refuses."""
        principals = frozenset(principals)
        allowed = self.policy.filter(principals)
        refused = principals - allowed
        if refused:
            audit_logger.log_safety_event(
                f"{phase} refused unmanaged accounts", ', '.join(sorted(refused))
            )
        return allowed

    def provision(self, catalog, valid: Iterable[str]) -> ProvisionResult:
        """
        Phase 1: make sure every valid account exists and holds the default role.

        All creations run in one transaction; any failure rolls the whole
        phase back and propagates.

        Raises:
            CatalogError: If any query or statement fails
        """
        result = ProvisionResult()
        if not self.policy.is_active:
            logger.warning("Provisioning skipped because no 'allowed_user_prefixes' are configured.")
            result.skipped = True
            return result

        candidates = self._gate(valid, "Provisioning")
        if not candidates:
            logger.info("No valid users to provision.")
            return result

        default_role = self.policy.default_role
        with catalog.transaction(self.timeouts.get('provisioning')) as tx:
            existing = {user for user in sorted(candidates) if tx.account_exists(user)}
            to_create = plan_provisioning(candidates, existing)

            for user in sorted(to_create):
                logger.info(f"CREATING user role: {user}")
                try:
                    tx.create_account(user)
                    logger.info(f"GRANTING default group {default_role} -> {user}")
                    tx.grant_role(default_role, user)
                except CatalogError:
                    audit_logger.log_catalog_operation('create', user, tx.database, False, default_role)
                    raise
                result.created.append(user)

        # Only audit once the transaction has committed
        for user in result.created:
            audit_logger.log_catalog_operation('create', user, catalog.alias, True, default_role)

        return result

    def sync_role_membership(self, catalog, role: str, desired: Iterable[str]) -> MembershipResult:
        """
        Phase 2: make the managed members of one role match the desired set.

        Members that do not match an allowed prefix are never read or touched.

        Raises:
            CatalogError: If the role's transaction fails; nothing is applied
        """
        result = MembershipResult(role=role)
        if not self.policy.is_active:
            logger.warning(f"Membership sync for role '{role}' skipped because no "
                           f"'allowed_user_prefixes' are configured.")
            result.skipped = True
            return result

        desired = self._gate(desired, f"Membership sync for '{role}'")

        with catalog.transaction(self.timeouts.get('membership_sync')) as tx:
            actual = self.policy.filter(
                tx.list_managed_role_members(role, self.policy.like_patterns())
            )
            plan = plan_membership(desired, actual)
            if plan.is_empty:
                logger.info(f"Role '{role}' already matches LDAP membership.")

            if plan.to_grant:
                logger.info(f"GRANTING {role} -> {sorted(plan.to_grant)}")
                for user in sorted(plan.to_grant):
                    tx.grant_role(role, user)
                    result.granted.append(user)

            if plan.to_revoke:
                logger.info(f"REVOKING {role} <- {sorted(plan.to_revoke)}")
                for user in sorted(plan.to_revoke):
                    tx.revoke_role(role, user)
                    result.revoked.append(user)

        for user in result.granted:
            audit_logger.log_catalog_operation('grant', user, catalog.alias, True, role)
        for user in result.revoked:
            audit_logger.log_catalog_operation('revoke', user, catalog.alias, True, role)

        return result

    def deprovision(self, catalog, valid: Iterable[str],
                    protected_roles: Iterable[str] = ()) -> DeprovisionResult:
        """
        Phase 3: drop managed accounts that are no longer in any mapped group.

        Drops are best effort: an account that cannot be dropped is recorded
        and the loop moves on. The transaction commits whatever succeeded.

        Args:
            catalog: PostgresClient of the database
            valid: Union of every resolved membership set
            protected_roles: Roles whose LDAP membership is unknown this pass;
                their current managed members are kept

        Raises:
            CatalogError: If the candidate query or the commit fails
            SavepointError: If the transaction cannot recover from a failed drop
        """
        result = DeprovisionResult()
        if not self.policy.is_active:
            # An empty prefix list would otherwise make every account a candidate
            logger.warning("Deprovisioning skipped because no 'allowed_user_prefixes' are configured.")
            result.skipped = True
            return result

        valid = set(valid)
        default_role = self.policy.default_role
        patterns = self.policy.like_patterns()

        with catalog.transaction(self.timeouts.get('deprovisioning')) as tx:
            for role in sorted(set(protected_roles)):
                kept = self.policy.filter(tx.list_managed_role_members(role, patterns))
                if kept:
                    logger.warning(f"Keeping {len(kept)} current members of [{role}]: "
                                   f"LDAP membership unknown this pass")
                valid |= kept

            managed = self.policy.filter(tx.list_managed_role_members(default_role, patterns))
            to_drop = plan_deprovisioning(managed, valid)

            if not to_drop:
                logger.info("No stale users to deprovision.")
                return result

            logger.info(f"Deprovisioning the following stale users: {sorted(to_drop)}")
            for user in sorted(to_drop):
                try:
                    tx.drop_account(user)
                except SavepointError:
                    audit_logger.log_catalog_operation('drop', user, tx.database, False)
                    raise
                except CatalogError as e:
                    logger.error(f"Failed to drop user '{user}': {e}")
                    result.failures.append(DropFailure(account=user, error=str(e)))
                    audit_logger.log_catalog_operation('drop', user, tx.database, False)
                    continue
                logger.info(f"Dropped user '{user}'.")
                result.dropped.append(user)

        for user in result.dropped:
            audit_logger.log_catalog_operation('drop', user, catalog.alias, True)

        return result


def merge_role_memberships(memberships: Dict[Any, FrozenSet[str]]) -> Set[str]:
    """Union of every resolved membership set (the global valid set)."""
    valid = set()
    for members in memberships.values():
        valid |= members
    return valid
