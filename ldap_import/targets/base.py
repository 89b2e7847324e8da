"""
Target store interface and common HTTP functionality.

This module defines the abstract interface the importer uses to read and
write users, groups and custom fields in the target system, plus a base class
with the HTTP/JSON plumbing shared by REST implementations.
"""

import json
import ssl
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Set, Union
from urllib.parse import urlparse, urljoin, urlencode
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class TargetAPIError(Exception):
    """Raised when the target store rejects or fails an operation."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TargetAuthenticationError(TargetAPIError):
    """Raised when authentication to the target API fails."""
    pass


class TargetUser:
    """A user record in the target system."""

    def __init__(self, id: Any, name: str, email: Optional[str] = None,
                 fields: Optional[Dict[str, Any]] = None):
        self.id = id
        self.name = name
        self.email = email
        self.fields = fields or {}

    def __repr__(self):
        return f"TargetUser(id={self.id!r}, name={self.name!r})"


class TargetGroup:
    """A user-defined group in the target system."""

    def __init__(self, id: Any, name: str, description: str = '',
                 fields: Optional[Dict[str, Any]] = None):
        self.id = id
        self.name = name
        self.description = description
        self.fields = fields or {}

    def __repr__(self):
        return f"TargetGroup(id={self.id!r}, name={self.name!r})"


class TargetCustomField:
    """A custom field definition."""

    def __init__(self, id: Any, name: str):
        self.id = id
        self.name = name

    def __repr__(self):
        return f"TargetCustomField(id={self.id!r}, name={self.name!r})"


class TargetStore(ABC):
    """
    Abstract interface to the target user database.

    Lookups return None when nothing matches.  Every failure is raised as
    TargetAPIError.
    """

    def authenticate(self) -> bool:
        """Perform any authentication needed before the first call."""
        return True

    def close_connection(self):
        """Release any connection held by the store."""
        pass

    # Users

    @abstractmethod
    def find_user(self, name: str) -> Optional[TargetUser]:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[TargetUser]:
        pass

    @abstractmethod
    def create_user(self, fields: Dict[str, Any]) -> TargetUser:
        pass

    @abstractmethod
    def update_user(self, user: TargetUser, fields: Dict[str, Any]) -> List[str]:
        """Overwrite the given fields; returns the store's change messages."""
        pass

    # Groups

    @abstractmethod
    def find_group(self, name: str) -> Optional[TargetGroup]:
        pass

    @abstractmethod
    def find_group_by_external_id(self, external_id: str) -> Optional[TargetGroup]:
        pass

    @abstractmethod
    def get_group_external_id(self, group: TargetGroup) -> Optional[str]:
        pass

    @abstractmethod
    def set_group_external_id(self, group: TargetGroup, external_id: str):
        pass

    @abstractmethod
    def create_group(self, fields: Dict[str, Any]) -> TargetGroup:
        pass

    @abstractmethod
    def update_group(self, group: TargetGroup, fields: Dict[str, Any]) -> List[str]:
        pass

    def rename_group(self, group: TargetGroup, new_name: str):
        self.update_group(group, {'Name': new_name})
        group.name = new_name

    # Membership

    @abstractmethod
    def list_direct_user_members(self, group: TargetGroup) -> Dict[str, TargetUser]:
        """Direct (non-recursive) user members keyed by username."""
        pass

    def direct_user_member_ids(self, group: TargetGroup) -> Set[Any]:
        """Ids of the group's direct user members."""
        return {user.id for user in self.list_direct_user_members(group).values()}

    @abstractmethod
    def add_group_member(self, group: TargetGroup, user: TargetUser):
        pass

    @abstractmethod
    def remove_group_member(self, group: TargetGroup, user: TargetUser):
        pass

    # Custom fields

    @abstractmethod
    def load_custom_field(self, name: str) -> Optional[TargetCustomField]:
        pass

    @abstractmethod
    def custom_field_has_option(self, custom_field: TargetCustomField, value: str) -> bool:
        pass

    @abstractmethod
    def add_custom_field_option(self, custom_field: TargetCustomField, value: str):
        pass

    @abstractmethod
    def get_custom_field_value(self, obj: TargetUser, cf_name: str) -> Optional[str]:
        """First value of the object's custom field, or None."""
        pass

    @abstractmethod
    def add_custom_field_value(self, obj: TargetUser, cf_name: str, value: str):
        """
        Add a value to the object's custom field.

        Single-value fields have their old value replaced and are cleared by an
        empty value.  Multi-value fields keep their existing values.
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()


class HTTPTargetStore(TargetStore):
    """
    Base class for target stores reached over an HTTP JSON API.

    Handles the connection, TLS context and Basic or token authentication.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the HTTP client.

        Args:
            config: Target configuration dictionary
        """
        self.config = config
        self.name = config.get('name', config.get('module', 'target'))
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise TargetAPIError(f"Truststore loading failed: {e}")

        cert_file = self.config.get('cert_file')
        if cert_file:
            try:
                self.ssl_context.load_cert_chain(cert_file, self.config.get('key_file'))
                logger.info(f"Loaded client certificate: {cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise TargetAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
                logger.debug(f"Configured Basic authentication for {self.name}")
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"token {token}"
                logger.debug(f"Configured token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def authenticate(self) -> bool:
        """Check that credentials are configured; REST calls authenticate per request."""
        if not self.auth_headers:
            logger.error(f"No usable credentials configured for {self.name}")
            return False
        return True

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Any] = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make an HTTP request to the target API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body, sent as JSON
            params: Query string parameters

        Returns:
            Parsed JSON response (empty dict for an empty body)

        Raises:
            TargetAPIError: If the request fails or the server answers with an error
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        if params:
            full_path = f"{full_path}?{urlencode(params)}"

        headers = dict(self.auth_headers)
        headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            self.close_connection()
            raise TargetAPIError(f"Connection error to {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise TargetAuthenticationError(f"Authentication failed for {self.name}", status=401)
        if response.status >= 400:
            raise TargetAPIError(
                f"HTTP {response.status}: {response.reason} {self._error_message(response_data)}".strip(),
                status=response.status
            )

        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise TargetAPIError(f"Invalid JSON response from {self.name}: {e}")

    @staticmethod
    def _error_message(response_data: str) -> str:
        try:
            data = json.loads(response_data)
        except (json.JSONDecodeError, TypeError):
            return ''
        if isinstance(data, dict):
            return str(data.get('message', ''))
        return ''

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
