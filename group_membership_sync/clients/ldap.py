"""
LDAP membership client.

Implements MembershipClient against an LDAP directory where groups are entries
carrying a multi-valued member attribute of user and group DNs.
"""

import re
import ssl
import time
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from ldap3 import Server, Connection, ALL, BASE, Tls, MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import (
    LDAPException, LDAPSocketOpenError, LDAPBindError, LDAPInvalidDnError
)
from ldap3.utils.dn import escape_rdn, parse_dn

from .base import MembershipClient
from ..errors import NotFound, RemoteError, TruncatedListingError

logger = logging.getLogger(__name__)

NO_SUCH_OBJECT = 32
OBJECT_CLASS_VIOLATION = 65

_ESCAPED = re.compile(r'\\([0-9a-fA-F]{2}|.)')


def _unescape_rdn_value(value: str) -> str:
    return _ESCAPED.sub(
        lambda m: chr(int(m.group(1), 16)) if len(m.group(1)) == 2 else m.group(1), value
    )


def _normalized_dn(components) -> List[Tuple[str, str]]:
    return [(attribute.lower(), _unescape_rdn_value(value).lower()) for attribute, value, _ in components]


class LDAPConnectionError(RemoteError):
    """Raised when the LDAP connection cannot be established."""
    pass


class LDAPMembershipClient(MembershipClient):
    """
    Membership client for LDAP directories (groupOfNames style groups).

    User ids are the value of user_id_attribute under user_base_dn and group ids
    the value of group_id_attribute under group_base_dn.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: The service configuration section
            error_config: The error_handling configuration section
        """
        self.config = config
        self.name = config.get('name', 'ldap')
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config['user_base_dn']
        self.group_base_dn = config['group_base_dn']
        self.user_id_attribute = config.get('user_id_attribute', 'uid')
        self.group_id_attribute = config.get('group_id_attribute', 'cn')
        self.member_attribute = config.get('member_attribute', 'member')
        self.placeholder_member_dn = config.get('placeholder_member_dn')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}", operation='connect')

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPSocketOpenError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg, operation='connect')

    def _create_tls_config(self) -> Optional[Tls]:
        """Create TLS configuration for LDAPS or StartTLS."""
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

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        return Tls(**tls_config)

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException:
                logger.debug("Ignoring unbind failure on discarded connection")
            self.connection = None

    def close(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def user_dn(self, user_id: str) -> str:
        return f"{self.user_id_attribute}={escape_rdn(user_id)},{self.user_base_dn}"

    def group_dn(self, group_id: str) -> str:
        return f"{self.group_id_attribute}={escape_rdn(group_id)},{self.group_base_dn}"

    def _require_connection(self, operation: str):
        if not self._connected:
            raise RemoteError("Not connected to LDAP server", operation=operation)

    def _search_base(self, dn: str, attributes: List[str], operation: str) -> Optional[Any]:
        """
        Read a single entry by DN.

        Returns:
            The ldap3 entry, or None when the server answers noSuchObject
        """
        self._require_connection(operation)
        try:
            success = self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=attributes
            )
        except LDAPException as e:
            raise RemoteError(f"LDAP query failed: {e}", operation=operation)

        if not success:
            if self.connection.result.get('result') == NO_SUCH_OBJECT:
                return None
            raise RemoteError(f"LDAP query failed: {self.connection.result.get('description')}",
                              operation=operation)
        if not self.connection.entries:
            return None
        return self.connection.entries[0]

    def _member_dns(self, group_id: str, operation: str) -> List[str]:
        entry = self._search_base(self.group_dn(group_id), [self.member_attribute], operation)
        if entry is None:
            raise RemoteError(f"group entry {self.group_dn(group_id)} not found", operation=operation)

        attributes = entry.entry_attributes_as_dict
        range_prefix = f"{self.member_attribute.lower()};range="
        if any(name.lower().startswith(range_prefix) for name in attributes):
            raise TruncatedListingError("server returned a partial member range", operation=operation)

        for name, values in attributes.items():
            if name.lower() == self.member_attribute.lower():
                return [str(value) for value in values]
        return []

    @staticmethod
    def _ids_under(dns: List[str], base_dn: str, id_attribute: str) -> Set[str]:
        """
        Extract RDN values of the DNs whose parent is exactly base_dn.

        Members in sub-containers of base_dn are skipped: their DN cannot be
        rebuilt from the id, so they could not be removed again.
        """
        base = _normalized_dn(parse_dn(base_dn, strip=True))
        ids = set()
        for dn in dns:
            try:
                components = parse_dn(dn, strip=True)
            except LDAPInvalidDnError:
                logger.warning(f"Skipping unparseable member DN: {dn}")
                continue
            if len(components) < 2 or _normalized_dn(components[1:]) != base:
                continue
            attribute, value, _ = components[0]
            if attribute.lower() == id_attribute.lower():
                ids.add(_unescape_rdn_value(value))
        return ids

    def list_group_users(self, group_id: str) -> Set[str]:
        operation = f"list user members of group {group_id}"
        dns = self._member_dns(group_id, operation)
        return self._ids_under(dns, self.user_base_dn, self.user_id_attribute)

    def list_group_groups(self, group_id: str) -> Set[str]:
        operation = f"list group members of group {group_id}"
        dns = self._member_dns(group_id, operation)
        return self._ids_under(dns, self.group_base_dn, self.group_id_attribute)

    def get_user(self, user_id: str) -> Dict[str, Any]:
        dn = self.user_dn(user_id)
        entry = self._search_base(dn, [self.user_id_attribute], f"fetch user {user_id}")
        if entry is None:
            raise NotFound(user_id)
        return {'id': user_id, 'dn': str(entry.entry_dn)}

    def _modify(self, group_id: str, changes: List[Tuple[str, List[str]]], operation: str) -> bool:
        self._require_connection(operation)
        try:
            return self.connection.modify(self.group_dn(group_id), {self.member_attribute: changes})
        except LDAPException as e:
            raise RemoteError(f"LDAP modify failed: {e}", operation=operation)

    def _modify_member(self, group_id: str, member_dn: str, change: str, operation: str):
        if self._modify(group_id, [(change, [member_dn])], operation):
            return

        result = self.connection.result
        if change == MODIFY_DELETE and result.get('result') == OBJECT_CLASS_VIOLATION:
            self._remove_last_member(group_id, member_dn, operation)
            return
        raise RemoteError(f"LDAP modify failed: {result.get('description')}", operation=operation)

    def _remove_last_member(self, group_id: str, member_dn: str, operation: str):
        """
        Swap the last member for placeholder_member_dn in a single modify.

        groupOfNames requires at least one member value, so the group can only be
        emptied of managed members when a placeholder outside both base DNs is configured.
        """
        if not self.placeholder_member_dn:
            raise RemoteError(
                "LDAP modify failed: group cannot lose its last member "
                "(configure placeholder_member_dn)", operation=operation
            )

        logger.info(f"Replacing last member of group {group_id} with {self.placeholder_member_dn}")
        changes = [(MODIFY_ADD, [self.placeholder_member_dn]), (MODIFY_DELETE, [member_dn])]
        if not self._modify(group_id, changes, operation):
            raise RemoteError(f"LDAP modify failed: {self.connection.result.get('description')}",
                              operation=operation)

    def add_user_to_group(self, group_id: str, user_id: str) -> None:
        self._modify_member(group_id, self.user_dn(user_id), MODIFY_ADD,
                            f"add user {user_id} to group {group_id}")

    def add_group_to_group(self, group_id: str, member_group_id: str) -> None:
        self._modify_member(group_id, self.group_dn(member_group_id), MODIFY_ADD,
                            f"add group {member_group_id} to group {group_id}")

    def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        self._modify_member(group_id, self.user_dn(user_id), MODIFY_DELETE,
                            f"remove user {user_id} from group {group_id}")

    def remove_group_from_group(self, group_id: str, member_group_id: str) -> None:
        self._modify_member(group_id, self.group_dn(member_group_id), MODIFY_DELETE,
                            f"remove group {member_group_id} from group {group_id}")
