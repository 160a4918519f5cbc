"""Conversion of heterogeneous platform failures into the shared taxonomy."""

import json
from typing import Any, Iterable, Optional

import aiohttp
import requests

from .exceptions import (
    AuthenticationError,
    ClientError,
    ConflictError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    PlatformAPIError,
    RateLimitError,
    ServerError,
    TLSError,
)
from .redaction import redact

# Error envelope keys, most specific first. GitLab uses ``message`` (string,
# list or field->errors dict) or OAuth ``error``/``error_description``; Azure
# DevOps uses ``message`` alongside ``typeKey``/``errorCode``.
_ENVELOPE_KEYS = ('message', 'error_description', 'error')

_MAX_BODY = 2000


def _flatten_message(value: Any) -> Optional[str]:
    """Render an envelope value (str, list or dict of lists) as one line."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        parts = [_flatten_message(v) for v in value]
        return '; '.join(p for p in parts if p) or None
    if isinstance(value, dict):
        parts = []
        for key, inner in value.items():
            rendered = _flatten_message(inner)
            if rendered:
                parts.append(f'{key}: {rendered}')
        return '; '.join(parts) or None
    return str(value)


def extract_message(body: Optional[str]) -> Optional[str]:
    """Pull the human-readable message out of either platform's error body.

    Args:
        body: Raw response body

    Returns:
        Message string, or None when the body has no recognizable envelope
    """
    if not body:
        return None
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return None

    if not isinstance(data, dict):
        return _flatten_message(data)

    for key in _ENVELOPE_KEYS:
        message = _flatten_message(data.get(key))
        if message:
            return message
    return None


def _retry_after(headers: Any) -> Optional[int]:
    if not headers:
        return None
    value = headers.get('Retry-After') or headers.get('retry-after')
    try:
        return int(float(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def error_class_for_status(status_code: int) -> type:
    """Map an HTTP status to its taxonomy class."""
    if status_code == 0:
        return NetworkError
    if status_code == 401:
        return AuthenticationError
    if status_code == 403:
        return PermissionDeniedError
    if status_code == 404:
        return NotFoundError
    if status_code == 409:
        return ConflictError
    if status_code == 429:
        return RateLimitError
    if status_code >= 500:
        return ServerError
    if status_code >= 400:
        return ClientError
    return PlatformAPIError


def _is_tls_failure(exc: BaseException) -> bool:
    if isinstance(exc, requests.exceptions.SSLError):
        return True
    if isinstance(exc, (aiohttp.ClientSSLError, aiohttp.ServerFingerprintMismatch)):
        return True
    return False


def _read_response(raw: Any) -> tuple:
    """Return (status, body, headers) from any response-like object."""
    status = getattr(raw, 'status_code', None)
    if status is None:
        status = getattr(raw, 'status', None)
    body = getattr(raw, 'text', None)
    if callable(body):
        body = None
    if body is None:
        body = getattr(raw, 'body', None)
    if isinstance(body, bytes):
        body = body.decode('utf-8', errors='replace')
    headers = getattr(raw, 'headers', None)
    return int(status or 0), body, headers


def normalize(
    raw_failure: Any,
    side: str,
    endpoint: str,
    secrets: Iterable[str] = (),
) -> PlatformAPIError:
    """Convert any failure into a :class:`PlatformAPIError` subclass.

    Never raises: anything unexpected degrades to the outer exception's
    message with status 0.

    Args:
        raw_failure: A response object (``requests``/``aiohttp``/curl result),
            a ``requests``/``aiohttp`` exception, or any other exception
        side: ``source`` or ``target``
        endpoint: Endpoint the call was issued against
        secrets: Configured tokens to mask in endpoint, message and body

    Returns:
        Normalized error instance (not raised)
    """
    safe_endpoint = redact(endpoint, secrets)
    try:
        if isinstance(raw_failure, PlatformAPIError):
            return raw_failure

        status = 0
        body = None
        headers = None
        fallback_message = None

        if isinstance(raw_failure, BaseException):
            fallback_message = str(raw_failure) or raw_failure.__class__.__name__
            response = getattr(raw_failure, 'response', None)
            if response is not None and not isinstance(raw_failure, aiohttp.ClientError):
                status, body, headers = _read_response(response)
            elif isinstance(raw_failure, aiohttp.ClientResponseError):
                status = raw_failure.status or 0
                headers = raw_failure.headers
                fallback_message = raw_failure.message or fallback_message
        else:
            status, body, headers = _read_response(raw_failure)
            fallback_message = f'HTTP {status}' if status else 'Unknown failure'

        safe_body = redact(body[:_MAX_BODY], secrets) if body else None
        message = extract_message(safe_body) or redact(fallback_message, secrets)

        if isinstance(raw_failure, BaseException) and _is_tls_failure(raw_failure):
            return TLSError(
                message, side=side, endpoint=safe_endpoint, raw_body=safe_body
            )

        error_class = error_class_for_status(status)
        if error_class is RateLimitError:
            return RateLimitError(
                message,
                retry_after=_retry_after(headers),
                side=side,
                endpoint=safe_endpoint,
                status_code=status,
                raw_body=safe_body,
            )
        return error_class(
            message,
            side=side,
            endpoint=safe_endpoint,
            status_code=status,
            raw_body=safe_body,
        )
    except Exception as e:  # noqa: BLE001 - normalization must not raise
        return PlatformAPIError(
            redact(str(raw_failure) or str(e), secrets),
            side=side,
            endpoint=safe_endpoint,
        )
