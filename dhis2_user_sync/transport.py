"""
Retrying HTTP transport for the DHIS2 Web API.

This module owns everything below the users API: URL resolution against the
configured base URL, authentication headers, SSL/truststore handling, JSON
encoding, error classification and bounded exponential-backoff retry.
"""

import json
import ssl
import socket
import base64
import logging
from dataclasses import dataclass, field
from http.client import HTTPSConnection, HTTPConnection, HTTPException
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from dhis2_user_sync.retry import (
    RetryableError, retry_call, is_retryable_error, create_retry_callback
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class TransportError(Exception):
    """Base exception for transport failures."""
    pass


class NetworkError(TransportError, RetryableError):
    """Raised when the server could not be reached or the connection broke."""
    pass


class RequestTimeout(NetworkError):
    """Raised when no response arrived within the request timeout."""
    pass


class HttpError(TransportError):
    """Raised for HTTP responses with status >= 400."""

    def __init__(self, status_code: int, body: Any = None, reason: str = ''):
        self.status_code = status_code
        self.body = body
        self.reason = reason
        super().__init__(f"HTTP {status_code}: {self.message}")

    @property
    def message(self) -> str:
        """Server-provided message when the body carries one."""
        if isinstance(self.body, dict) and self.body.get('message'):
            return str(self.body['message'])
        return self.reason or 'request failed'


class ConflictError(HttpError):
    """HTTP 409: the create collided with an existing unique key."""
    pass


@dataclass
class ApiRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None


@dataclass
class ApiResponse:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class Transport:
    """
    HTTP client for one DHIS2 instance.

    Each request opens its own connection, so a single Transport can be
    shared by the worker threads of a batch.
    """

    def __init__(self, config: Dict[str, Any], retry_config: Optional[Dict[str, Any]] = None,
                 event_log=None):
        """
        Initialize transport.

        Args:
            config: The ``dhis2`` configuration section
            retry_config: The ``error_handling`` configuration section
            event_log: Optional EventLog receiving one warning per retry
        """
        retry_config = retry_config or {}

        self.config = config
        self.base_url = config['base_url'].rstrip('/')
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout_seconds', DEFAULT_TIMEOUT)
        self.max_attempts = retry_config.get('max_attempts', 3)
        self.retry_base_delay = retry_config.get('retry_base_delay', 1.0)
        self.event_log = event_log

        self.parsed_url = urlparse(self.base_url)
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
            logger.warning(f"SSL verification disabled for {self.parsed_url.netloc}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates."""
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

            logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise TransportError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', '').lower()

        if auth_method == 'token':
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"ApiToken {token}"
            else:
                logger.error("Token auth configured but missing token")

        elif auth_method == 'bearer':
            token = self.auth_config.get('token')
            if token:
                self.auth_headers['Authorization'] = f"Bearer {token}"
            else:
                logger.error("Bearer auth configured but missing token")

        elif auth_method == 'basic':
            username = self.auth_config.get('username')
            password = self.auth_config.get('password')
            if username and password:
                credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
            else:
                logger.error("Basic auth configured but missing username or password")

        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}'")

    def _resolve(self, url: str):
        """Split a relative or absolute URL into (scheme, host, path)."""
        if not url.startswith(('http://', 'https://')):
            url = self.base_url + '/' + url.lstrip('/')
        parsed = urlparse(url)
        path = parsed.path or '/'
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return parsed.scheme, parsed.netloc, path

    def _open_connection(self, scheme: str, host: str,
                         timeout: float) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(host, context=self.ssl_context, timeout=timeout)
        return HTTPConnection(host, timeout=timeout)

    def send(self, request: ApiRequest) -> ApiResponse:
        """
        Execute one request, retrying transient failures.

        Up to ``max_attempts`` attempts are made, waiting
        ``retry_base_delay * 2^(attempt-1)`` between them. The exception of
        the last attempt is raised unchanged.

        Args:
            request: Request to send

        Returns:
            Response with status < 400

        Raises:
            NetworkError: Connection failure or timeout (RequestTimeout)
            HttpError: Error status from the server (ConflictError for 409)
        """
        return retry_call(
            self._send_once,
            args=(request,),
            max_attempts=self.max_attempts,
            delay=self.retry_base_delay,
            backoff=2.0,
            exceptions=(TransportError,),
            should_retry=is_retryable_error,
            on_retry=create_retry_callback(f"{request.method} {request.url}", self.event_log)
        )

    def request(self, method: str, url: str, body: Any = None,
                timeout: Optional[float] = None, headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        """Build an ApiRequest and send it."""
        return self.send(ApiRequest(method=method.upper(), url=url, headers=headers or {},
                                    body=body, timeout=timeout))

    def _send_once(self, request: ApiRequest) -> ApiResponse:
        scheme, host, path = self._resolve(request.url)
        timeout = request.timeout or self.timeout

        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        request_headers.update(request.headers)

        request_body = None
        if request.body is not None:
            request_body = json.dumps(request.body)
            request_headers['Content-Type'] = 'application/json'

        conn = self._open_connection(scheme, host, timeout)
        try:
            logger.debug(f"Making {request.method} request to {host}{path}")
            conn.request(request.method, path, request_body, request_headers)

            response = conn.getresponse()
            # proxies in front of DHIS2 may answer with non-UTF-8 error pages
            raw = response.read().decode('utf-8', errors='replace')
            status = response.status
            reason = response.reason
            response_headers = dict(response.getheaders())

        except (TimeoutError, socket.timeout) as e:
            raise RequestTimeout(f"{request.method} {path} timed out after {timeout}s: {e}")
        except (OSError, HTTPException) as e:
            raise NetworkError(f"Connection error to {host}: {e}")
        finally:
            conn.close()

        logger.debug(f"Response status: {status} {reason}")
        body = self._parse_body(raw)

        if status >= 400:
            if status == 409:
                raise ConflictError(status, body, reason)
            raise HttpError(status, body, reason)

        return ApiResponse(status=status, body=body, headers=response_headers)

    @staticmethod
    def _parse_body(raw: str) -> Any:
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw


def describe_error(error: Exception) -> str:
    """Server message when the error carries one, else the error text."""
    return getattr(error, 'message', None) or str(error)
