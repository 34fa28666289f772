"""
LDAP client for connecting to and querying LDAP directories.

This module provides the directory lookups the group resolver needs: locating
a group by name and reading the object classes, member references and account
identifier of a single entry. It holds no sync logic of its own.
"""

import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)

# ldap3 result code for a search base that does not exist
NO_SUCH_OBJECT = 32


class DirectoryError(Exception):
    """Base exception for directory lookups."""
    pass


class LDAPConnectionError(DirectoryError):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(DirectoryError):
    """Raised when LDAP query fails."""
    pass


class GroupNotFoundError(DirectoryError):
    """Raised when no group matches the requested name."""
    pass


class AmbiguousGroupError(DirectoryError):
    """Raised when more than one group matches the requested name."""
    pass


@dataclass
class DirectoryEntry:
    """The attributes of one directory entry relevant to group expansion."""
    dn: str
    object_classes: List[str] = field(default_factory=list)
    member_dns: List[str] = field(default_factory=list)
    identifier: Optional[str] = None


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    Only ever reads from the directory.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.group_search_base = config.get('group_search_base', '')
        self.group_object_class = config.get('group_object_class', 'groupOfNames')
        self.group_name_attribute = config.get('group_name_attribute', 'cn')
        self.group_object_classes = [
            oc.lower() for oc in config.get('group_object_classes', ['group', 'groupOfNames'])
        ]
        self.member_attribute = config.get('member_attribute', 'member')
        self.user_id_attribute = config.get('user_id_attribute', 'uid')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.connect_attempts = max(1, int(config.get('connect_attempts', 1)))
        self.connect_wait = config.get('connect_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish and bind the connection to the LDAP server.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection or bind fails
        """
        try:
            tls_config = self._create_tls_config()

            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(self.connect_attempts):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                # Raises LDAPException subclasses on failure
                self.connection.open()

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{self.connect_attempts} failed: {e}")
                self._discard_connection()
                if attempt < self.connect_attempts - 1:
                    time.sleep(self.connect_wait)

        error_msg = f"Failed to connect to LDAP after {self.connect_attempts} attempt(s)"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def find_group_dn(self, group_name: str) -> str:
        """
        Locate the DN of a group by exact name under the group search base.

        Args:
            group_name: Value of the group name attribute (usually cn)

        Returns:
            Distinguished name of the single matching group

        Raises:
            GroupNotFoundError: If no group matches
            AmbiguousGroupError: If more than one group matches
            LDAPQueryError: If the search fails
        """
        self._require_connection()

        search_filter = (f"(&(objectClass={self.group_object_class})"
                         f"({self.group_name_attribute}={escape_filter_chars(group_name)}))")
        logger.debug(f"Searching with filter: {search_filter} in base: {self.group_search_base}")

        try:
            self.connection.search(
                search_base=self.group_search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[]
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search for group '{group_name}' failed: {e}")

        result_code = self.connection.result.get('result', 0)
        if result_code != 0:
            raise LDAPQueryError(f"LDAP search for group '{group_name}' failed: "
                                 f"{self.connection.result.get('description')}")

        entries = self.connection.entries
        if not entries:
            raise GroupNotFoundError(
                f"LDAP group '{group_name}' not found under search base '{self.group_search_base}'"
            )
        if len(entries) > 1:
            raise AmbiguousGroupError(f"Found {len(entries)} LDAP groups named '{group_name}'")

        return str(entries[0].entry_dn)

    def get_entry(self, dn: str) -> DirectoryEntry:
        """
        Read a single entry's object classes, members and identifier.

        Args:
            dn: Distinguished name of the entry

        Returns:
            DirectoryEntry for the DN

        Raises:
            LDAPQueryError: If the entry does not exist or the search fails
        """
        self._require_connection()

        try:
            self.connection.search(
                search_base=dn,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=['objectClass', self.member_attribute, self.user_id_attribute]
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP read of '{dn}' failed: {e}")

        result_code = self.connection.result.get('result', 0)
        if result_code == NO_SUCH_OBJECT or (result_code == 0 and not self.connection.entries):
            raise LDAPQueryError(f"Object not found: {dn}")
        if result_code != 0:
            raise LDAPQueryError(f"LDAP read of '{dn}' failed: {self.connection.result.get('description')}")

        entry = self.connection.entries[0]
        attributes = {name.lower(): values for name, values in entry.entry_attributes_as_dict.items()}

        identifier_values = attributes.get(self.user_id_attribute.lower()) or []
        identifier = str(identifier_values[0]) if identifier_values else None

        return DirectoryEntry(
            dn=str(entry.entry_dn),
            object_classes=[str(oc) for oc in attributes.get('objectclass', [])],
            member_dns=[str(member) for member in attributes.get(self.member_attribute.lower(), []) if member],
            identifier=identifier or None,
        )

    def is_group(self, entry: DirectoryEntry) -> bool:
        """Return True when the entry's object classes mark it as a group."""
        return any(oc.lower() in self.group_object_classes for oc in entry.object_classes)

    def _require_connection(self):
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except (DirectoryError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
