"""
LDAP client for connecting to and querying LDAP directories.

This module binds to the directory, runs paged searches for users and groups,
and resolves group member references back to user entries.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Tuple
from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ldap_import.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPEntry:
    """
    A directory entry: its DN and a multi-valued attribute bag.

    Attribute names are matched case-insensitively, as LDAP does.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        self.dn = dn
        self._attributes: Dict[str, List[str]] = {}
        for name, values in (attributes or {}).items():
            if values is None:
                continue
            if not isinstance(values, (list, tuple)):
                values = [values]
            self._attributes[name.lower()] = [self._to_text(value) for value in values]

    @classmethod
    def from_response(cls, item: Dict[str, Any]) -> 'LDAPEntry':
        """Build an entry from one ldap3 ``connection.response`` item."""
        return cls(item.get('dn', ''), item.get('attributes') or {})

    @staticmethod
    def _to_text(value: Any) -> str:
        if isinstance(value, bytes):
            try:
                return value.decode('utf-8')
            except UnicodeDecodeError:
                return value.hex()
        return str(value)

    def get(self, name: str) -> Optional[List[str]]:
        """All values of an attribute, or None if the entry does not have it."""
        values = self._attributes.get(name.lower())
        return list(values) if values is not None else None

    def get_value(self, name: str) -> Optional[str]:
        """First value of an attribute, or None."""
        values = self._attributes.get(name.lower())
        return values[0] if values else None

    def __repr__(self):
        return f"LDAPEntry({self.dn!r})"


class LDAPClient:
    """
    LDAP client for the import.

    Holds one bound connection for the whole run; searches reconnect if the
    connection is gone.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.host = config['host']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.base = config.get('base', '')
        self.user_filter = config.get('filter') or '(objectClass=person)'
        self.group_base = config.get('group_base')
        self.group_filter = config.get('group_filter')
        self.size_limit = config.get('size_limit')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl')
        if self.use_ssl is None:
            self.use_ssl = str(self.host).lower().startswith('ldaps://')
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> Connection:
        """
        Establish and bind a connection to the LDAP server.

        Binds as ``bind_dn`` when configured, anonymously otherwise.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            The bound ldap3 connection

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        logger.debug(f"Connecting to {self.host}")
        try:
            self.server = Server(
                self.host,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Can't connect to {self.host}: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException, LDAPConnectionError),
                on_retry=create_retry_callback(f"LDAP bind to {self.host}")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            )

        self._connected = True
        logger.info(f"Connected and bound to LDAP server {self.host}")
        return self.connection

    def _open_and_bind(self):
        if self.bind_dn:
            logger.debug(f"Binding as {self.bind_dn}")
        else:
            logger.debug("Binding anonymously")

        self.connection = Connection(
            self.server,
            user=self.bind_dn or None,
            password=self.bind_password if self.bind_dn else None,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPConnectionError(f"LDAP bind failed {self.connection.result.get('description')}")
        except (LDAPException, LDAPConnectionError):
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Error while dropping connection: {e}")
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

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def _get_connection(self) -> Connection:
        if self.connection is not None and self._connected:
            return self.connection
        try:
            return self.connect()
        except LDAPConnectionError as e:
            logger.error(f"Fetching an LDAP connection failed: {e}")
            raise

    def disconnect(self):
        """Unbind and close the LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def run_user_search(self) -> List[LDAPEntry]:
        """Search for the users to import."""
        return self.run_search(self.base, self.user_filter)

    def run_group_search(self) -> List[LDAPEntry]:
        """Search for the groups to import; nothing is searched unless both group base and filter are set."""
        if not (self.group_base and self.group_filter):
            logger.warning("Not running a group import, configuration not set")
            return []
        return self.run_search(self.group_base, self.group_filter)

    def find_member_entries(self, member: str, member_attr: str = 'dn') -> List[LDAPEntry]:
        """
        Look up the user entry a group member value refers to.

        Args:
            member: Value found in the group's member attribute
            member_attr: User attribute the member value is matched against

        Returns:
            Matching user entries (usually zero or one)
        """
        attr = (member_attr or 'dn').lower()
        if attr == 'dn':
            return self.run_search(member, self.user_filter)
        search_filter = f"(&{self.user_filter}({attr}={escape_filter_chars(member)}))"
        return self.run_search(self.base, search_filter)

    def run_search(self, base: str, search_filter: str) -> List[LDAPEntry]:
        """
        Run a search and return the entries of every page.

        With ``size_limit`` set, the simple paged results control is used and
        pages are fetched until the server stops returning a cookie or a page
        comes back short.  A failing page ends the search with the entries
        gathered so far; if the server still holds a cookie for it, the search
        is abandoned so the server can release its state.

        Raises:
            LDAPConnectionError: If no connection can be established
        """
        connection = self._get_connection()

        search = {
            'search_base': base,
            'search_filter': search_filter,
            'search_scope': SUBTREE,
            'attributes': ALL_ATTRIBUTES,
        }
        page_size = self.size_limit or 0
        results: List[LDAPEntry] = []
        cookie = None
        page_count = 0

        while True:
            page_count += 1
            logger.debug(f"Searching with: base => '{base}' filter => '{search_filter}' page => {page_count}")

            try:
                entries, paging = self._search_page(connection, search, page_size, cookie)
            except LDAPQueryError as e:
                logger.error(f"LDAP search failed {e}")
                break

            results.extend(entries)

            if not page_size or len(entries) < page_size:
                cookie = None
                break

            if paging is None:
                logger.error("LDAP search didn't return a paging control")
                break

            cookie = paging.get('cookie')
            if not cookie:
                break

        if cookie:
            self._abandon_search(connection, search, cookie)

        logger.debug(f"Search found {len(results)} objects")
        return results

    def _search_page(self, connection: Connection, search: Dict[str, Any], page_size: int,
                     cookie: Optional[bytes]) -> Tuple[List[LDAPEntry], Optional[Dict[str, Any]]]:
        """
        Fetch one page.

        Returns:
            The page's entries and the value of the paging control (None when
            paging is off or the server sent no control)

        Raises:
            LDAPQueryError: If the search fails
        """
        kwargs = dict(search)
        if page_size:
            kwargs['paged_size'] = page_size
            kwargs['paged_cookie'] = cookie

        try:
            success = connection.search(**kwargs)
        except LDAPException as e:
            raise LDAPQueryError(str(e))

        if not success:
            result = connection.result or {}
            raise LDAPQueryError(f"{result.get('description', 'unknown error')} {result.get('message', '')}".strip())

        entries = [
            LDAPEntry.from_response(item)
            for item in (connection.response or [])
            if item.get('type') == 'searchResEntry'
        ]

        paging = None
        if page_size:
            control = ((connection.result or {}).get('controls') or {}).get(PAGED_RESULTS_OID)
            if control is not None:
                paging = control.get('value') or {}

        return entries, paging

    def _abandon_search(self, connection: Connection, search: Dict[str, Any], cookie: bytes):
        """Tell the server we're done with a paged result set."""
        logger.debug("Informing the LDAP server we're done with the result set")
        try:
            connection.search(paged_size=0, paged_cookie=cookie, **search)
        except LDAPException as e:
            logger.warning(f"Failed to abandon paged search: {e}")

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            connection = self._get_connection()
            return connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope='BASE',
                attributes=['namingContexts'],
                size_limit=1
            )
        except (LDAPException, LDAPConnectionError) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
