"""
Base directory adapter interface and common functionality.

This module defines the contract every downstream adapter implements (lookup,
create, update, delete), along with the shared HTTP client, SSL handling,
authentication and payload template rendering.
"""

import os
import ssl
import json
import base64
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Union, NamedTuple, Callable
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from identity_sync.retry import retry_call, retry_settings, create_retry_callback

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for downstream API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: str = '', error_key: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.error_key = error_key


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to a downstream API fails."""
    pass


class RecordLookupError(DirectoryAPIError):
    """Raised when a lookup query itself fails (as opposed to finding nothing)."""
    pass


class GroupNotFoundError(DirectoryAPIError):
    """Raised when a group name resolves to zero groups."""
    pass


class RecordHandle(NamedTuple):
    """Reference to a downstream record, re-resolved by query on every run."""

    key: str
    id: Optional[str] = None
    attributes: Dict[str, Any] = {}
    created: bool = False

    @classmethod
    def empty(cls, key: str) -> 'RecordHandle':
        return cls(key=key)

    @property
    def is_empty(self) -> bool:
        return not self.id


class RestResponse(NamedTuple):
    status: int
    reason: str
    text: str

    def json(self) -> Dict[str, Any]:
        if not self.text:
            return {}
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as e:
            raise DirectoryAPIError(f"Invalid JSON response: {e}", self.status, self.text)


def render_template(template: str, values: Dict[str, Any]) -> str:
    """
    Substitute %NAME% placeholders in a JSON payload template.

    Values are JSON string-escaped so that quotes or backslashes in names do
    not break the payload.

    Args:
        template: Payload template, e.g. '{"userName": "%USERNAME%"}'
        values: Mapping of placeholder name (without percent signs) to value

    Returns:
        Rendered payload string
    """
    payload = template
    for name, value in values.items():
        escaped = json.dumps('' if value is None else str(value))[1:-1]
        payload = payload.replace(f'%{name}%', escaped)
    return payload


def person_template_values(person, **extra) -> Dict[str, Any]:
    """Standard placeholder values for a Person; extra entries override them."""
    values = {
        'USERNAME': person.id,
        'FIRSTNAME': person.first_name,
        'LASTNAME': person.last_name,
        'DISPLAYNAME': person.display_name,
        'MANAGER': person.manager_ref,
        'LOB': person.line_of_business or '',
    }
    values.update(extra)
    return values


def _extract_error_key(text: str) -> Optional[str]:
    try:
        data = json.loads(text) if text else {}
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        return data.get('errorKey')
    return None


class RestClient:
    """
    Blocking HTTP(S) client for one downstream system.

    Handles SSL context creation (custom truststores and client certificates),
    static authentication headers, request encoding and error mapping.
    """

    def __init__(self, config: Dict[str, Any], base_url_field: str = 'base_url'):
        """
        Initialize REST client.

        Args:
            config: System configuration dictionary (name, base URL, auth, TLS options)
            base_url_field: Key holding the base URL in config
        """
        self.config = config
        self.name = config.get('name', 'unknown')
        self.base_url = config[base_url_field]
        self.auth_config = config.get('auth') or {}
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

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

        keystore_file = self.config.get('keystore_file')
        if keystore_file:
            self._load_client_cert(keystore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates (PEM or PKCS12)."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)

            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata=b'\n'.join(ca_certs).decode('ascii'))

            else:
                raise DirectoryAPIError(f"Unsupported truststore type '{truststore_type}'")

            logger.info(f"Loaded {truststore_type} truststore for {self.name}: {truststore_file}")

        except DirectoryAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise DirectoryAPIError(f"Truststore loading failed: {e}")

    def _load_client_cert(self, keystore_file: str):
        """Load client certificate for mutual TLS (PEM or PKCS12)."""
        keystore_type = self.config.get('keystore_type', 'PEM').upper()
        keystore_password = self.config.get('keystore_password')

        try:
            if keystore_type == 'PEM':
                self.ssl_context.load_cert_chain(keystore_file, password=keystore_password)

            elif keystore_type == 'PKCS12':
                with open(keystore_file, 'rb') as f:
                    p12_data = f.read()

                private_key, certificate, _ = pkcs12.load_key_and_certificates(
                    p12_data, keystore_password.encode() if keystore_password else None
                )
                if not (private_key and certificate):
                    raise DirectoryAPIError(f"PKCS12 keystore {keystore_file} has no key/certificate pair")

                # ssl only loads cert chains from files
                with tempfile.TemporaryDirectory() as tmp_dir:
                    cert_path = os.path.join(tmp_dir, 'cert.pem')
                    key_path = os.path.join(tmp_dir, 'key.pem')
                    with open(cert_path, 'wb') as cert_file:
                        cert_file.write(certificate.public_bytes(serialization.Encoding.PEM))
                    with open(key_path, 'wb') as key_file:
                        key_file.write(private_key.private_bytes(
                            encoding=serialization.Encoding.PEM,
                            format=serialization.PrivateFormat.PKCS8,
                            encryption_algorithm=serialization.NoEncryption()
                        ))
                    self.ssl_context.load_cert_chain(cert_path, key_path)

            else:
                raise DirectoryAPIError(f"Unsupported keystore type '{keystore_type}'")

            logger.info(f"Loaded {keystore_type} client certificate for {self.name}: {keystore_file}")

        except DirectoryAPIError:
            raise
        except Exception as e:
            logger.error(f"Failed to load client certificate {keystore_file}: {e}")
            raise DirectoryAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up static authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                self.auth_headers['Authorization'] = basic_auth_header(username, password)
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
            # Bearer token is acquired at run time and passed per request
            logger.debug(f"OAuth2 authentication configured for {self.name}")

        elif auth_method in ('mtls', 'mutual_tls'):
            logger.debug(f"Mutual TLS authentication configured for {self.name}")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def build_path(self, path: str = '', params: Optional[Dict[str, Any]] = None) -> str:
        """Join path onto the base path and append an encoded query string."""
        full_path = self.base_path
        if path:
            full_path = f"{full_path}/{path.lstrip('/')}"
        if not full_path:
            full_path = '/'
        query = [self.parsed_url.query] if self.parsed_url.query else []
        if params:
            query.append(urlencode(params, quote_via=quote))
        if query:
            full_path = f"{full_path}?{'&'.join(query)}"
        return full_path

    def request(self, method: str, path: str = '', body: Optional[Union[Dict, str]] = None,
                headers: Optional[Dict[str, str]] = None, params: Optional[Dict[str, Any]] = None,
                token: Optional[str] = None) -> RestResponse:
        """
        Make HTTP request to the downstream API.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body; dicts are JSON encoded, strings are sent as-is
            headers: Additional headers
            params: Query string parameters
            token: Bearer token overriding the configured authentication

        Returns:
            RestResponse for any 2xx status

        Raises:
            DirectoryAuthenticationError: On HTTP 401
            DirectoryAPIError: On any other non-2xx status or transport failure
        """
        full_path = self.build_path(path, params)

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if token:
            request_headers['Authorization'] = f"Bearer {token}"

        request_body = None
        if body is not None:
            request_body = json.dumps(body) if isinstance(body, dict) else body
            request_headers['Content-Type'] = 'application/json'
        if headers:
            request_headers.update(headers)

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body.encode('utf-8') if request_body else None,
                         request_headers)
            response = conn.getresponse()
            response_text = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            # Drop the possibly half-closed keep-alive connection
            self.close_connection()
            raise DirectoryAPIError(f"Connection error to {self.name}: {e}")
        except Exception as e:
            self.close_connection()
            raise DirectoryAPIError(f"Request failed for {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status == 401:
            raise DirectoryAuthenticationError(
                f"Authentication failed for {self.name}", response.status, response_text)
        if not 200 <= response.status < 300:
            raise DirectoryAPIError(
                f"HTTP {response.status} {response.reason} from {self.name}: {response_text[:500]}",
                response.status, response_text, _extract_error_key(response_text))

        return RestResponse(response.status, response.reason, response_text)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None


def basic_auth_header(username: str, password: str) -> str:
    credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {credentials}"


class DirectoryAdapter(ABC):
    """
    Abstract base class for downstream directory adapters.

    Each downstream system (identity provider, business app, content share)
    gets one subclass. Every operation takes the current RunContext so the
    adapter never holds the bearer token itself.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None,
                 base_url_field: str = 'base_url'):
        """
        Initialize adapter.

        Args:
            config: System configuration dictionary
            error_handling: Retry configuration block
            base_url_field: Key holding the base URL in config
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.client = RestClient(config, base_url_field=base_url_field)
        self.retry_options = retry_settings(error_handling or {})

    def _idempotent(self, operation_name: str, func: Callable, *args, **kwargs):
        """Run an idempotent call with bounded retry on transient failures."""
        return retry_call(
            func, args, kwargs,
            on_retry=create_retry_callback(f"{self.name} {operation_name}"),
            reraise=True,
            **self.retry_options
        )

    @abstractmethod
    def find_by_key(self, ctx, key: str) -> Optional[RecordHandle]:
        """
        Look up the record whose unique key equals key.

        Returns:
            RecordHandle if found, None if there is no match

        Raises:
            RecordLookupError: If the query fails
        """
        pass

    @abstractmethod
    def create(self, ctx, person) -> RecordHandle:
        """
        Create a record for person. A conflict means "already present" and
        returns the existing handle when obtainable, else an empty handle.
        """
        pass

    @abstractmethod
    def update(self, ctx, handle: RecordHandle, person) -> None:
        """Apply the adapter's update policy to an existing record."""
        pass

    @abstractmethod
    def delete(self, ctx, handle: RecordHandle) -> None:
        """Delete a record. A missing record counts as deleted."""
        pass

    def close(self):
        self.client.close_connection()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
