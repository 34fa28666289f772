"""
Recursive expansion of LDAP groups into flat sets of account names.
"""

import logging
from typing import FrozenSet, List, Set, Tuple

from pg_ldap_sync.ldap_client import DirectoryEntry, DirectoryError

logger = logging.getLogger(__name__)


class GroupResolver:
    """
    Expands a named group, including nested groups, into leaf account names.

    The directory client must provide find_group_dn(name), get_entry(dn) and
    is_group(entry), as LDAPClient does.
    """

    def __init__(self, directory):
        self.directory = directory

    def resolve(self, group_name: str) -> FrozenSet[str]:
        """
        Resolve a group into the deduplicated set of its leaf account names.

        Args:
            group_name: Name of the top-level group

        Returns:
            Frozen set of account identifiers

        Raises:
            GroupNotFoundError: If no group has this name
            AmbiguousGroupError: If several groups have this name
            DirectoryError: If the group itself cannot be read
        """
        group_dn = self.directory.find_group_dn(group_name)
        root = self.directory.get_entry(group_dn)

        logger.info(f"Starting recursive member search for group: {group_name}")
        members = self._expand(root)
        logger.info(f"Found {len(members)} unique members in group '{group_name}' and its subgroups")
        return frozenset(members)

    def _expand(self, root: DirectoryEntry) -> Set[str]:
        """Depth-first walk over the group graph using an explicit stack."""
        members = set()
        visited = set()
        stack: List[Tuple[str, DirectoryEntry]] = [(root.dn, root)]

        while stack:
            group_dn, group_entry = stack.pop()
            if group_dn in visited:
                logger.debug(f"Skipping already processed group: {group_dn}")
                continue
            visited.add(group_dn)

            for member_dn in group_entry.member_dns:
                if member_dn in visited:
                    continue

                try:
                    member_entry = self.directory.get_entry(member_dn)
                except DirectoryError as e:
                    logger.warning(f"Could not retrieve object for DN '{member_dn}': {e}. Skipping.")
                    continue

                if self.directory.is_group(member_entry):
                    logger.debug(f"Found nested group, descending into: {member_dn}")
                    stack.append((member_dn, member_entry))
                    continue

                if not member_entry.identifier:
                    logger.warning(f"Member with DN '{member_dn}' is not a group and has no "
                                   f"identifying attribute. Skipping.")
                    continue

                if member_entry.identifier not in members:
                    logger.debug(f"Found user: {member_entry.identifier}")
                    members.add(member_entry.identifier)

        return members
