"""Resilient transport for the GitLab (source) and Azure DevOps (target) APIs."""

import asyncio
import base64
import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel, Field

from ..config.config import Config
from .curl import CurlFallback, CurlUnavailableError, RawResponse
from .exceptions import (
    SOURCE,
    TARGET,
    AuthenticationError,
    ClientError,
    NetworkError,
    PermissionDeniedError,
    PlatformAPIError,
    RateLimitError,
    TLSError,
)
from .normalizer import normalize
from .rate_limiter import RateLimiter
from .redaction import Redactor

USER_AGENT = 'gitlab-ado-migrate/0.1.0'

# Cheap, idempotent endpoint used to discover the target's api-version
VERSION_PROBE_PATH = '_apis/projects'


class Operation(BaseModel):
    """A single remote call against one side."""

    method: str = Field(default='GET', description='HTTP method')
    path: str = Field(
        ..., description='Path relative to the side base URL, or absolute URL'
    )
    side: str = Field(default=TARGET, description='source or target')
    body: Optional[Any] = Field(default=None, description='JSON request body')
    params: Dict[str, Any] = Field(default_factory=dict, description='Query parameters')
    api_version: Optional[str] = Field(
        default=None, description='Explicit api-version for this target call'
    )

    class Config:
        """Pydantic configuration."""

        frozen = True

    @property
    def mutating(self) -> bool:
        return self.method.upper() not in ('GET', 'HEAD', 'OPTIONS')


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def _parse_body(text: Optional[str]) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class Transport:
    """Executes operations with retry, backoff, TLS fallback and redaction.

    One instance is shared by every component for the lifetime of the
    process. The negotiated api-version is cached until
    :meth:`refresh_api_version` is called.
    """

    def __init__(
        self,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
        curl: Optional[CurlFallback] = None,
    ):
        """Initialize transport.

        Args:
            config: Endpoint configuration (never mutated)
            sleep: Blocking sleep used between retries
            curl: Alternate execution path used on TLS failures
        """
        self.config = config
        self.retry_policy = config.retry
        self.redact = Redactor(config.secrets)
        self.log_calls = config.migration.log_calls
        self.curl = curl or CurlFallback(
            timeout=max(config.source.timeout, config.target.timeout)
        )
        self._sleep = sleep
        self.logger = logger.bind(component='Transport')

        self.base_urls = {
            SOURCE: f'{config.source.url}/api/{config.source.api_version}',
            TARGET: config.target.url,
        }
        self.timeouts = {SOURCE: config.source.timeout, TARGET: config.target.timeout}
        self.verify = {
            SOURCE: config.source.verify_ssl,
            TARGET: config.target.verify_ssl,
        }
        self.auth_headers = {
            SOURCE: {'Authorization': f'Bearer {config.source.token}'},
            TARGET: {
                'Authorization': f'Basic {self._basic_token(config.target.token)}'
            },
        }
        # The encoded PAT is a secret in its own right
        self.redact.add_secret(self._basic_token(config.target.token))

        self.sessions = {
            SOURCE: self._build_session(SOURCE),
            TARGET: self._build_session(TARGET),
        }
        self.rate_limiters = {
            SOURCE: RateLimiter(config.source.rate_limit_per_second),
            TARGET: RateLimiter(config.target.rate_limit_per_second),
        }

        self._api_version: Optional[str] = None
        self._version_lock = threading.Lock()

        self.logger.info(
            f'Initialized transport: source={config.source.url} target={config.target.url}'
        )

    @staticmethod
    def _basic_token(pat: str) -> str:
        return base64.b64encode(f':{pat}'.encode('utf-8')).decode('ascii')

    def _headers(self, side: str) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'User-Agent': USER_AGENT,
        }
        headers.update(self.auth_headers[side])
        return headers

    def _build_session(self, side: str) -> requests.Session:
        session = requests.Session()
        session.headers.update(self._headers(side))
        session.verify = self.verify[side]
        return session

    def build_url(self, side: str, path: str) -> str:
        """Build a full URL for a side-relative path (absolute URLs pass through).

        Args:
            side: source or target
            path: API path

        Returns:
            Full URL
        """
        if path.startswith(('http://', 'https://')):
            return path
        return urljoin(self.base_urls[side] + '/', path.lstrip('/'))

    def _params_for(self, operation: Operation) -> Dict[str, Any]:
        params = dict(operation.params)
        if operation.side == TARGET and 'api-version' not in params:
            params['api-version'] = (
                operation.api_version or self.negotiate_api_version()
            )
        return params

    # -- API version negotiation -------------------------------------------

    def negotiate_api_version(self) -> str:
        """Return the highest api-version both we and the target support.

        Probes :data:`VERSION_PROBE_PATH` with each configured candidate,
        highest first. The result is cached for the life of the process.

        Returns:
            Negotiated api-version string

        Raises:
            ClientError: If no candidate is accepted by the target
        """
        with self._version_lock:
            if self._api_version:
                return self._api_version

            pinned = self.config.target.api_version
            if pinned:
                self._api_version = pinned
                return pinned

            self._api_version = self._probe_api_versions()
            return self._api_version

    def _probe_api_versions(self) -> str:
        last_error: Optional[PlatformAPIError] = None
        for candidate in self.config.target.api_versions:
            probe = Operation(
                method='GET',
                path=VERSION_PROBE_PATH,
                side=TARGET,
                params={'$top': 1},
                api_version=candidate,
            )
            try:
                self.issue(probe)
            except (AuthenticationError, PermissionDeniedError):
                raise
            except ClientError as e:
                self.logger.debug(f'api-version {candidate} rejected: {e.message}')
                last_error = e
                continue
            self.logger.info(f'Negotiated target api-version {candidate}')
            return candidate

        raise ClientError(
            'Target accepts none of the api-versions '
            f'{", ".join(self.config.target.api_versions)}'
            + (f' (last error: {last_error.message})' if last_error else ''),
            side=TARGET,
            endpoint=self.redact(self.build_url(TARGET, VERSION_PROBE_PATH)),
            status_code=last_error.status_code if last_error else 0,
        )

    def refresh_api_version(self) -> None:
        """Forget the negotiated api-version; the next target call re-probes."""
        with self._version_lock:
            self._api_version = None

    # -- retry helpers shared by sync and async paths ------------------------

    def _should_retry(self, error: PlatformAPIError, attempt: int) -> bool:
        if attempt >= self.retry_policy.max_attempts:
            return False
        if isinstance(error, TLSError):
            return False
        if isinstance(error, NetworkError):
            return True
        return error.status_code in self.retry_policy.retryable_status_codes

    def _retry_delay(
        self, operation: Operation, attempt: int, error: PlatformAPIError
    ) -> float:
        delay = self.retry_policy.delay_for(attempt)
        self.logger.warning(
            f'{operation.method} {self.redact(operation.path)} failed on attempt '
            f'{attempt}/{self.retry_policy.max_attempts} ({error.remediation}, '
            f'status {error.status_code}); retrying in {delay:.1f}s'
        )
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            # Backoff stays deterministic; the hint is only reported
            self.logger.info(
                f'{operation.side} asked to retry after {error.retry_after}s '
                f'(backing off {delay:.1f}s)'
            )
        return delay

    def _log_call(
        self, operation: Operation, url: str, status: int, started: float
    ) -> None:
        if not self.log_calls:
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        path = self.redact(url)
        logger.bind(
            component='Transport',
            side=operation.side,
            method=operation.method.upper(),
            path=path,
            status=status,
            duration_ms=duration_ms,
        ).info(f'{operation.method.upper()} {path} -> {status} ({duration_ms} ms)')

    def _normalize(
        self, failure: Any, operation: Operation, url: str
    ) -> PlatformAPIError:
        return normalize(failure, operation.side, url, secrets=self.redact.secrets)

    @staticmethod
    def _to_api_response(
        status: int, text: Optional[str], headers: Any
    ) -> APIResponse:
        return APIResponse(
            status_code=status,
            data=_parse_body(text),
            headers={str(k): str(v) for k, v in dict(headers or {}).items()},
            success=200 <= status < 300,
        )

    # -- sync path ----------------------------------------------------------

    def _send_via_curl(
        self,
        operation: Operation,
        url: str,
        params: Dict[str, Any],
        tls_failure: BaseException,
    ) -> RawResponse:
        try:
            return self.curl.request(
                operation.method,
                url,
                self._headers(operation.side),
                params=params,
                json_body=operation.body,
            )
        except CurlUnavailableError as e:
            self.logger.error(f'curl fallback failed: {self.redact(str(e))}')
            raise self._normalize(tls_failure, operation, url) from e

    def _send(
        self,
        operation: Operation,
        url: str,
        params: Dict[str, Any],
        tls_failure: Optional[TLSError] = None,
    ) -> Union[requests.Response, RawResponse]:
        self.rate_limiters[operation.side].acquire_sync()
        if tls_failure is not None:
            return self._send_via_curl(operation, url, params, tls_failure)
        try:
            return self.sessions[operation.side].request(
                operation.method.upper(),
                url,
                params=params,
                json=operation.body,
                timeout=self.timeouts[operation.side],
            )
        except requests.RequestException as e:
            raise self._normalize(e, operation, url) from e

    def issue(self, operation: Operation) -> APIResponse:
        """Execute an operation, retrying whitelisted failures.

        Retries connection failures and HTTP 429/500/502/503/504 up to
        ``retry.max_attempts`` total attempts with deterministic exponential
        backoff. A TLS failure switches the operation, once, to the curl
        execution path for its remaining attempts.

        Args:
            operation: Operation to execute

        Returns:
            API response for a 2xx/3xx status

        Raises:
            PlatformAPIError: Normalized failure once retries are exhausted or
                the failure is not retryable
        """
        url = self.build_url(operation.side, operation.path)
        params = self._params_for(operation)
        tls_failure: Optional[TLSError] = None
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            try:
                try:
                    response = self._send(operation, url, params, tls_failure)
                except TLSError as e:
                    if tls_failure is not None:
                        raise
                    self.logger.warning(
                        f'TLS failure on {self.redact(url)}; falling back to curl'
                    )
                    tls_failure = e
                    response = self._send(operation, url, params, tls_failure)
            except PlatformAPIError as error:
                self._log_call(operation, url, error.status_code, started)
                if not self._should_retry(error, attempt):
                    raise
                self._sleep(self._retry_delay(operation, attempt, error))
                continue

            status = response.status_code
            self._log_call(operation, url, status, started)
            if status < 400:
                return self._to_api_response(status, response.text, response.headers)

            error = self._normalize(response, operation, url)
            if not self._should_retry(error, attempt):
                raise error
            self._sleep(self._retry_delay(operation, attempt, error))

    # -- async path ---------------------------------------------------------

    async def _send_async(
        self,
        operation: Operation,
        url: str,
        params: Dict[str, Any],
        tls_failure: Optional[TLSError] = None,
    ) -> RawResponse:
        await self.rate_limiters[operation.side].acquire()
        if tls_failure is not None:
            return await asyncio.to_thread(
                self._send_via_curl, operation, url, params, tls_failure
            )

        timeout = aiohttp.ClientTimeout(total=self.timeouts[operation.side])
        ssl = None if self.verify[operation.side] else False
        try:
            async with aiohttp.ClientSession(
                headers=self._headers(operation.side), timeout=timeout
            ) as session:
                async with session.request(
                    operation.method.upper(),
                    url,
                    params={k: str(v) for k, v in params.items()},
                    json=operation.body,
                    ssl=ssl,
                ) as response:
                    text = await response.text()
                    return RawResponse(
                        status_code=response.status,
                        text=text,
                        headers=dict(response.headers),
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._normalize(e, operation, url) from e

    async def issue_async(self, operation: Operation) -> APIResponse:
        """Asynchronous counterpart of :meth:`issue` with identical semantics."""
        url = self.build_url(operation.side, operation.path)
        if operation.side == TARGET:
            params = await asyncio.to_thread(self._params_for, operation)
        else:
            params = self._params_for(operation)
        tls_failure: Optional[TLSError] = None
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            try:
                try:
                    response = await self._send_async(
                        operation, url, params, tls_failure
                    )
                except TLSError as e:
                    if tls_failure is not None:
                        raise
                    self.logger.warning(
                        f'TLS failure on {self.redact(url)}; falling back to curl'
                    )
                    tls_failure = e
                    response = await self._send_async(
                        operation, url, params, tls_failure
                    )
            except PlatformAPIError as error:
                self._log_call(operation, url, error.status_code, started)
                if not self._should_retry(error, attempt):
                    raise
                await asyncio.sleep(self._retry_delay(operation, attempt, error))
                continue

            self._log_call(operation, url, response.status_code, started)
            if response.status_code < 400:
                return self._to_api_response(
                    response.status_code, response.text, response.headers
                )

            error = self._normalize(response, operation, url)
            if not self._should_retry(error, attempt):
                raise error
            await asyncio.sleep(self._retry_delay(operation, attempt, error))

    # -- convenience wrappers -------------------------------------------------

    def get(
        self,
        side: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> APIResponse:
        """Issue a GET."""
        return self.issue(
            Operation(method='GET', path=path, side=side, params=params or {}, api_version=api_version)
        )

    def post(
        self,
        side: str,
        path: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> APIResponse:
        """Issue a POST with a JSON body."""
        return self.issue(
            Operation(
                method='POST', path=path, side=side, body=data,
                params=params or {}, api_version=api_version,
            )
        )

    def put(
        self,
        side: str,
        path: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> APIResponse:
        """Issue a PUT with a JSON body."""
        return self.issue(
            Operation(
                method='PUT', path=path, side=side, body=data,
                params=params or {}, api_version=api_version,
            )
        )

    def patch(
        self,
        side: str,
        path: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> APIResponse:
        """Issue a PATCH with a JSON body."""
        return self.issue(
            Operation(
                method='PATCH', path=path, side=side, body=data,
                params=params or {}, api_version=api_version,
            )
        )

    def delete(
        self,
        side: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> APIResponse:
        """Issue a DELETE."""
        return self.issue(
            Operation(method='DELETE', path=path, side=side, params=params or {}, api_version=api_version)
        )

    # -- listings -----------------------------------------------------------

    def get_paginated(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get all pages of a paginated GitLab endpoint.

        Args:
            path: Source API path
            params: Query parameters
            per_page: Items per page

        Returns:
            List of all items from all pages
        """
        all_items: List[Dict[str, Any]] = []
        query = dict(params or {})
        query['per_page'] = per_page
        page = 1

        while True:
            query['page'] = page
            response = self.get(SOURCE, path, params=dict(query))
            items = response.data
            if not items:
                break

            all_items.extend(items)

            next_page = response.headers.get('X-Next-Page') or response.headers.get('x-next-page')
            total_pages = response.headers.get('X-Total-Pages') or response.headers.get('x-total-pages')
            if next_page:
                page = int(next_page)
                continue
            if total_pages and page >= int(total_pages):
                break
            if len(items) < per_page:
                break
            page += 1

        self.logger.debug(f'Retrieved {len(all_items)} items from {path}')
        return all_items

    def list_target(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        api_version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get every item of an Azure DevOps list endpoint, following continuation tokens.

        Args:
            path: Target API path
            params: Query parameters
            api_version: Explicit api-version

        Returns:
            Concatenated ``value`` arrays
        """
        items: List[Dict[str, Any]] = []
        query = dict(params or {})

        while True:
            response = self.get(TARGET, path, params=dict(query), api_version=api_version)
            data = response.data or {}
            items.extend(data.get('value', []) if isinstance(data, dict) else [])

            token = None
            for name, value in response.headers.items():
                if name.lower() == 'x-ms-continuationtoken':
                    token = value
            if not token:
                break
            query['continuationToken'] = token

        return items

    def test_connection(self, side: str) -> bool:
        """Test that one side is reachable and accepts our credentials.

        Args:
            side: source or target

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if side == SOURCE:
                self.get(SOURCE, '/user')
            else:
                self.get(TARGET, VERSION_PROBE_PATH, params={'$top': 1})
            return True
        except PlatformAPIError as e:
            self.logger.error(f'Connection test failed: {e.describe()}')
            return False

    def close(self):
        """Close both HTTP sessions."""
        for session in self.sessions.values():
            session.close()
        self.logger.debug('Transport sessions closed')

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
