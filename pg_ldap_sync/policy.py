"""
Sync policy and role mappings.

The sync policy decides which account names are managed by this job. Only
names starting with one of the allowed prefixes may ever be created, granted,
revoked or dropped; everything else in the catalog is left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, List, FrozenSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleMapping:
    """One LDAP group mirrored into one PostgreSQL role."""
    ldap_group: str
    postgres_role: str

    @classmethod
    def from_config(cls, role_config: Dict[str, Any]) -> 'RoleMapping':
        return cls(ldap_group=role_config['ldap_group_cn'],
                   postgres_role=role_config['postgres_role'])


@dataclass(frozen=True)
class SyncPolicy:
    """
    Allowed account prefixes and the default role every managed account holds.

    With no prefixes configured the policy is inactive and every mutating
    phase must skip its work instead of consulting allows().
    """
    allowed_prefixes: tuple = field(default_factory=tuple)
    default_role: str = ''

    @classmethod
    def from_config(cls, policy_config: Dict[str, Any]) -> 'SyncPolicy':
        prefixes = policy_config.get('allowed_user_prefixes') or []
        # An empty string would match every account
        cleaned = tuple(str(prefix) for prefix in prefixes if prefix)
        if len(cleaned) != len(prefixes):
            logger.warning("Ignoring empty entries in sync_policy.allowed_user_prefixes")
        return cls(allowed_prefixes=cleaned,
                   default_role=policy_config.get('default_postgres_group', ''))

    @property
    def is_active(self) -> bool:
        return bool(self.allowed_prefixes)

    def allows(self, principal: str) -> bool:
        """True iff the principal starts with at least one allowed prefix."""
        return any(principal.startswith(prefix) for prefix in self.allowed_prefixes)

    def filter(self, principals: Iterable[str]) -> FrozenSet[str]:
        """Narrow a set of principals to the managed ones."""
        return frozenset(p for p in principals if self.allows(p))

    def like_patterns(self) -> List[str]:
        """
        SQL LIKE patterns matching exactly the names allows() accepts.

        Wildcards inside a prefix are escaped with the default LIKE escape
        character, so a prefix such as 'nc_' does not also match 'ncx'.
        """
        patterns = []
        for prefix in self.allowed_prefixes:
            escaped = prefix.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
            patterns.append(escaped + '%')
        return patterns
