"""
Base directory client interface and common HTTP functionality.

This module defines the abstract base class every directory backend
implements, along with the shared JSON-over-HTTPS client, authentication
handling and the translation of HTTP outcomes into tagged results.
"""

import json
import ssl
import time
import base64
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPException, HTTPSConnection, HTTPConnection

from squadron_sync.models import Group
from squadron_sync.retry import (
    Result, Success, TransientFailure, FailureCode, failure_for_status
)

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Raised by the HTTP layer for error responses."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to the directory service fails."""
    pass


class DirectoryClientBase(ABC):
    """
    Abstract base class for directory service backends.

    Every operation returns a Result: Success carrying the parsed value,
    TransientFailure for rate-limit/server/connection problems, or
    PermanentFailure for client errors. HTTP details stay inside the adapter.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory client.

        Args:
            config: The 'directory' configuration section
        """
        self.config = config
        self.name = config.get('name', 'directory')
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', 30)

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
        ca_file = self.config.get('ca_cert_file')
        if ca_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_file)
                logger.info(f"Loaded CA certificates: {ca_file}")
            except (OSError, ssl.SSLError) as e:
                raise DirectoryAPIError(f"CA certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up static authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
            else:
                logger.error(f"Basic auth configured but missing username or password for {self.name}")

        elif auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")

        elif auth_method == 'oauth2':
            required = ('client_id', 'client_secret', 'token_url')
            if not all(self.auth_config.get(k) for k in required):
                logger.error(f"OAuth2 auth configured but missing required fields "
                             f"(client_id, client_secret, token_url) for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _oauth2_get_token(self) -> None:
        """
        Retrieve an OAuth2 access token using the client credentials flow.

        Raises:
            DirectoryAuthenticationError: If the token cannot be obtained
        """
        token_url = urlparse(self.auth_config['token_url'])
        token_data = {
            'grant_type': 'client_credentials',
            'client_id': self.auth_config['client_id'],
            'client_secret': self.auth_config['client_secret'],
        }
        scope = self.auth_config.get('scope')
        if scope:
            token_data['scope'] = scope

        if token_url.scheme == 'https':
            token_conn = HTTPSConnection(token_url.netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            token_conn = HTTPConnection(token_url.netloc, timeout=self.timeout)

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', token_url.path or '/', urlencode(token_data), {
                'Content-Type': 'application/x-www-form-urlencoded',
                'Accept': 'application/json'
            })
            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')

            if response.status != 200:
                raise DirectoryAuthenticationError(
                    f"OAuth2 token request failed for {self.name}: {response.status} {response.reason}",
                    response.status
                )
            try:
                token_response = json.loads(response_data)
            except json.JSONDecodeError as e:
                raise DirectoryAuthenticationError(f"Invalid JSON in OAuth2 token response: {e}")

            access_token = token_response.get('access_token')
            if not access_token:
                raise DirectoryAuthenticationError(f"OAuth2 response missing access_token for {self.name}")

            self.auth_headers['Authorization'] = f"Bearer {access_token}"
            expires_in = token_response.get('expires_in')
            if expires_in:
                self._token_expires_at = time.time() + int(expires_in) - 60
            logger.info(f"Obtained OAuth2 token for {self.name}")
        finally:
            token_conn.close()

    def _is_oauth2_token_valid(self) -> bool:
        if self._token_expires_at is None:
            return 'Authorization' in self.auth_headers
        return time.time() < self._token_expires_at

    def authenticate(self) -> None:
        """
        Perform any authentication round-trips needed before the first call.

        Raises:
            DirectoryAuthenticationError: If authentication fails
        """
        if self.auth_config.get('method', '').lower() == 'oauth2' and not self._is_oauth2_token_valid():
            self._oauth2_get_token()

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Make an HTTP request to the directory API.

        Args:
            method: HTTP method (GET, POST, PATCH, PUT, DELETE)
            path: API endpoint path (relative to base_url)
            body: JSON request body
            params: Query string parameters

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            DirectoryAPIError: If the request fails; status_code is set for HTTP errors
        """
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode({k: v for k, v in params.items() if v is not None})

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
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
            except (OSError, HTTPException) as e:
                # the connection may be mid-request; never reuse it
                self.close_connection()
                raise DirectoryAPIError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401:
                if (self.auth_config.get('method', '').lower() == 'oauth2'
                        and auth_attempt < max_auth_retries):
                    logger.info(f"401 received, refreshing OAuth2 token for {self.name}")
                    self._token_expires_at = None
                    self._oauth2_get_token()
                    request_headers.update(self.auth_headers)
                    continue
                raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", 401)

            if response.status >= 400:
                raise DirectoryAPIError(
                    f"HTTP {response.status}: {response.reason} {self._error_detail(response_data)}".strip(),
                    response.status
                )

            if not response_data:
                return {}
            try:
                return json.loads(response_data)
            except json.JSONDecodeError as e:
                raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}", 502)

        raise DirectoryAPIError(f"Request failed after {max_auth_retries + 1} attempts")

    def _error_detail(self, response_data: str) -> str:
        try:
            return json.loads(response_data).get('error', {}).get('message', '')
        except (ValueError, AttributeError):
            return ''

    def call(self, method: str, path: str, body: Optional[Dict] = None,
             params: Optional[Dict[str, Any]] = None) -> Result:
        """
        Make a request and translate the outcome into a tagged result.

        Returns:
            Success(parsed body), TransientFailure or PermanentFailure
        """
        try:
            return Success(self.request(method, path, body=body, params=params))
        except DirectoryAPIError as e:
            if e.status_code is None:
                return TransientFailure(FailureCode.CONNECTION_ERROR, str(e))
            if e.status_code == 401:
                # an expired credential is not fixed by retrying the same header
                return failure_for_status(403, str(e))
            return failure_for_status(e.status_code, str(e))
        except (OSError, HTTPException) as e:
            self.close_connection()
            return TransientFailure(FailureCode.CONNECTION_ERROR, str(e))

    @staticmethod
    def quote(value: str) -> str:
        return quote(value, safe='@')

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    # Operations every backend implements

    @abstractmethod
    def get_user(self, email: str) -> Result:
        """Return Success(DirectoryAccount) or a failure (NOT_FOUND when absent)."""

    @abstractmethod
    def suspend_user(self, email: str) -> Result:
        pass

    @abstractmethod
    def reactivate_user(self, email: str) -> Result:
        pass

    @abstractmethod
    def archive_user(self, email: str) -> Result:
        """Move the account into the backend's notion of archived."""

    @abstractmethod
    def delete_user(self, email: str) -> Result:
        pass

    @abstractmethod
    def get_group(self, email: str) -> Result:
        """Return Success(dict) shaped like Group.metadata() or a failure (NOT_FOUND when absent)."""

    @abstractmethod
    def create_group(self, group: Group) -> Result:
        pass

    @abstractmethod
    def patch_group(self, group: Group) -> Result:
        pass

    @abstractmethod
    def list_group_members(self, group_email: str) -> Result:
        """Return Success(List[str]) of member email addresses."""

    @abstractmethod
    def add_group_member(self, group_email: str, member_email: str) -> Result:
        pass

    @abstractmethod
    def remove_group_member(self, group_email: str, member_email: str) -> Result:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()


def member_emails(members: List[Dict[str, Any]]) -> List[str]:
    """Extract lower-cased email addresses from a member listing."""
    return [m['email'].lower() for m in members if m.get('email')]
