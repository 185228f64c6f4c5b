"""
REST membership client.

Implements MembershipClient against a JSON HTTP API exposing group membership
endpoints, with SSL, Basic/Bearer/OAuth2 authentication, paged listings and
retries for idempotent reads.
"""

import json
import ssl
import time
import base64
import logging
from typing import Any, Dict, List, Optional, Set, Union
from urllib.parse import urlparse, urljoin, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from .base import MembershipClient
from ..diff import flatten_ids
from ..errors import NotFound, RemoteError, TruncatedListingError
from ..retry import (
    RetryableError,
    MaxRetriesExceeded,
    retry_call,
    retry_settings,
    is_retryable_status,
    create_retry_callback,
)

logger = logging.getLogger(__name__)


class RestMembershipClient(MembershipClient):
    """
    Membership client for a REST directory API.

    Endpoints used:
        GET    /groups/{id}/users            paged with limit/offset
        GET    /groups/{id}/groups           paged with limit/offset
        GET    /users/{id}
        POST   /groups/{id}/users            {"user_id": ...}
        POST   /groups/{id}/groups           {"group_id": ...}
        DELETE /groups/{id}/users/{user_id}
        DELETE /groups/{id}/groups/{group_id}
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize REST membership client.

        Args:
            config: The service configuration section
            error_config: The error_handling configuration section
        """
        self.config = config
        self.name = config.get('name', 'rest')
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {}) or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        self.page_size = int(config.get('page_size', 500))
        self.max_pages = int(config.get('max_pages', 100))
        self.retry_options = retry_settings(error_config)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self._token_expires_at = None

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
                raise RemoteError(f"CA certificate loading failed: {e}", operation='setup')

        cert_file = self.config.get('cert_file')
        if cert_file:
            try:
                self.ssl_context.load_cert_chain(cert_file, self.config.get('key_file'))
                logger.info(f"Loaded client certificate: {cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise RemoteError(f"Client certificate loading failed: {e}", operation='setup')

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
                self.auth_headers['Authorization'] = f"Bearer {token}"
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            required = ('client_id', 'client_secret', 'token_url')
            if not all(self.auth_config.get(field) for field in required):
                logger.error(f"OAuth2 auth configured but missing required fields "
                             f"(client_id, client_secret, token_url) for {self.name}")
            else:
                logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> bool:
        """
        Retrieve an OAuth2 access token using the client credentials flow.

        Returns:
            True if a token was obtained
        """
        token_url = self.auth_config.get('token_url')
        client_id = self.auth_config.get('client_id')
        client_secret = self.auth_config.get('client_secret')
        if not all([client_id, client_secret, token_url]):
            logger.error(f"OAuth2 configuration incomplete for {self.name}")
            return False

        parsed_token_url = urlparse(token_url)
        if parsed_token_url.scheme == 'https':
            token_conn = HTTPSConnection(parsed_token_url.netloc, context=self.ssl_context,
                                         timeout=self.timeout)
        else:
            token_conn = HTTPConnection(parsed_token_url.netloc, timeout=self.timeout)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if self.auth_config.get('scope'):
            token_data['scope'] = self.auth_config['scope']

        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), headers)
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                logger.error(f"OAuth2 token request failed for {self.name}: "
                             f"{response.status} {response.reason}")
                return False

            token_response = json.loads(response_data)
            access_token = token_response.get('access_token')
            if not access_token:
                logger.error(f"OAuth2 response missing access_token for {self.name}")
                return False

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                self._token_expires_at = time.time() + int(expires_in) - 60  # 60 second buffer
            logger.info(f"Successfully obtained OAuth2 token for {self.name}")
            return True

        except (OSError, HTTPException, ValueError) as e:
            logger.error(f"OAuth2 token request error for {self.name}: {e}")
            return False
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        return self._token_expires_at is not None and time.time() < self._token_expires_at

    def connect(self) -> bool:
        """
        Obtain credentials that need a round trip (OAuth2 tokens).

        Returns:
            True if the client is ready to issue requests
        """
        if self.auth_config.get('method', '').lower() != 'oauth2':
            return True
        if self._is_oauth2_token_valid():
            logger.debug(f"OAuth2 token still valid for {self.name}")
            return True
        return self._oauth2_get_token()

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context,
                                              timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                query: Optional[Dict[str, Any]] = None, operation: Optional[str] = None) -> Any:
        """
        Make an HTTP request to the membership API.

        Args:
            method: HTTP method (GET, POST, DELETE)
            path: Endpoint path relative to base_url
            body: JSON request body
            query: Query string parameters
            operation: Operation description used in error messages

        Returns:
            Parsed JSON response, or None for an empty body

        Raises:
            RetryableError: For connection failures and transient HTTP statuses
            RemoteError: For any other failure
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        if query:
            full_path = f"{full_path}?{urlencode(query)}"

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, request_body, request_headers)
                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
                logger.debug(f"Response status: {response.status} {response.reason}")
            except (OSError, HTTPException) as e:
                self.close()
                raise RetryableError(f"Connection error to {self.name}: {e}")

            if response.status == 401:
                auth_method = self.auth_config.get('method', '').lower()
                if auth_method == 'oauth2' and auth_attempt < max_auth_retries:
                    logger.info(f"401 error received, attempting to refresh OAuth2 token for {self.name}")
                    if self._oauth2_get_token():
                        request_headers.update(self.auth_headers)
                        continue
                raise RemoteError(f"Authentication failed for {self.name}",
                                  operation=operation, status_code=401)

            if is_retryable_status(response.status):
                raise RetryableError(f"HTTP {response.status}: {response.reason}",
                                     status_code=response.status)

            if response.status >= 400:
                raise RemoteError(f"HTTP {response.status}: {response.reason}",
                                  operation=operation, status_code=response.status)

            if not response_data:
                return None
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise RemoteError(f"Invalid JSON response from {self.name}: {e}",
                                  operation=operation)

        raise RemoteError(f"Request failed after {max_auth_retries + 1} attempts",
                          operation=operation)

    def _get(self, path: str, query: Optional[Dict[str, Any]] = None,
             operation: Optional[str] = None) -> Any:
        """Issue an idempotent GET, retrying transient failures."""
        try:
            return retry_call(
                self.request,
                args=('GET', path),
                kwargs={'query': query, 'operation': operation},
                exceptions=(RetryableError,),
                on_retry=create_retry_callback(operation or f"GET {path}"),
                **self.retry_options
            )
        except MaxRetriesExceeded as e:
            last = e.last_exception
            raise RemoteError(str(e), operation=operation,
                              status_code=getattr(last, 'status_code', None)) from last

    def _mutate(self, method: str, path: str, body: Optional[Dict] = None,
                operation: Optional[str] = None) -> None:
        """Issue a membership change exactly once."""
        try:
            self.request(method, path, body=body, operation=operation)
        except RetryableError as e:
            raise RemoteError(str(e), operation=operation, status_code=e.status_code) from e

    def _list_members(self, group_id: str, kind: str) -> Set[str]:
        """Read every page of a membership listing until the server returns an empty page."""
        path = f"/groups/{quote(group_id, safe='')}/{kind}s"
        operation = f"list {kind} members of group {group_id}"
        member_ids = set()
        offset = 0

        for page_number in range(self.max_pages):
            query = {'limit': self.page_size, 'offset': offset}
            records = self._records(self._get(path, query=query, operation=operation), operation)
            if not records:
                logger.debug(f"Listed {len(member_ids)} {kind} members of group {group_id} "
                             f"in {page_number + 1} pages")
                return member_ids
            try:
                member_ids.update(flatten_ids(records))
            except ValueError as e:
                raise RemoteError(f"unexpected listing record: {e}", operation=operation)
            offset += len(records)

        raise TruncatedListingError(
            f"listing exceeded {self.max_pages} pages", operation=operation
        )

    @staticmethod
    def _records(response: Any, operation: Optional[str] = None) -> List[Dict[str, Any]]:
        if response is None:
            return []
        if isinstance(response, dict):
            for key in ('items', 'members'):
                if key in response:
                    response = response[key]
                    break
            else:
                raise RemoteError(f"unexpected listing payload with keys {sorted(response)}",
                                  operation=operation)
        if not isinstance(response, list):
            raise RemoteError(f"unexpected listing payload: {type(response).__name__}",
                              operation=operation)
        return response

    def list_group_users(self, group_id: str) -> Set[str]:
        return self._list_members(group_id, 'user')

    def list_group_groups(self, group_id: str) -> Set[str]:
        return self._list_members(group_id, 'group')

    def get_user(self, user_id: str) -> Dict[str, Any]:
        try:
            user = self._get(f"/users/{quote(user_id, safe='')}",
                             operation=f"fetch user {user_id}")
        except RemoteError as e:
            if e.status_code == 404:
                raise NotFound(user_id) from e
            raise
        return user or {'id': user_id}

    def add_user_to_group(self, group_id: str, user_id: str) -> None:
        self._mutate('POST', f"/groups/{quote(group_id, safe='')}/users",
                     body={'user_id': user_id},
                     operation=f"add user {user_id} to group {group_id}")

    def add_group_to_group(self, group_id: str, member_group_id: str) -> None:
        self._mutate('POST', f"/groups/{quote(group_id, safe='')}/groups",
                     body={'group_id': member_group_id},
                     operation=f"add group {member_group_id} to group {group_id}")

    def remove_user_from_group(self, group_id: str, user_id: str) -> None:
        self._mutate('DELETE',
                     f"/groups/{quote(group_id, safe='')}/users/{quote(user_id, safe='')}",
                     operation=f"remove user {user_id} from group {group_id}")

    def remove_group_from_group(self, group_id: str, member_group_id: str) -> None:
        self._mutate('DELETE',
                     f"/groups/{quote(group_id, safe='')}/groups/{quote(member_group_id, safe='')}",
                     operation=f"remove group {member_group_id} from group {group_id}")

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
