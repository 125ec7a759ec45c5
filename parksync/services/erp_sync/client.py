"""HTTP client for SoftOne web services (login, GetTable, setData)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from parksync.config import settings

logger = logging.getLogger(__name__)

# SoftOne error codes meaning the clientID is missing or expired.
AUTH_ERROR_CODES = frozenset({-100, -101, -1001})


class ErpError(Exception):
    """Base exception for ERP client errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class ErpAuthError(ErpError):
    """Login rejected or session no longer valid."""


class ErpTransientError(ErpError):
    """Retryable ERP error (5xx, timeouts, network issues)."""


class ErpRateLimitError(ErpTransientError):
    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ErpBusinessError(ErpError):
    """The ERP processed the request and refused it."""


@dataclass(frozen=True)
class ErpCredentials:
    base_url: str
    username: str
    password: str
    app_id: int
    company: str | None = None
    branch: str | None = None
    module: str | None = None
    refid: str | None = None
    version: str = "1"
    registered_name: str | None = None


@dataclass
class ErpPage:
    rows: list
    total_count: int
    columns: list[str] | None = None


class ErpClient(Protocol):
    def authenticate(self, credentials: ErpCredentials) -> str: ...

    def fetch_page(
        self,
        token: str,
        table: str,
        fields: list[str],
        filter_expr: str,
        offset: int,
        page_size: int,
    ) -> ErpPage: ...

    def push_row(
        self,
        token: str,
        table: str,
        key: str,
        payload: dict[str, Any],
        object_name: str | None = None,
    ) -> str: ...

    def close(self) -> None: ...


@dataclass
class _TableResponse:
    cache_key: tuple
    rows: list
    columns: list[str] | None
    total_count: int = 0
    fetched_at: float = field(default_factory=time.monotonic)


class SoftOneClient:
    """
    Client for the SoftOne JSON web services endpoint.

    Features:
    - Explicit session token: ``authenticate`` returns the clientID and
      every other call takes it as a parameter
    - Responses decoded from the ERP's ANSI code page
    - Automatic retry with exponential backoff for network errors and 429
    - Offset/limit paging over GetTable, which returns whole tables
    """

    TABLE_CACHE_SECONDS = 600

    def __init__(
        self,
        base_url: str,
        app_id: int,
        timeout: int | None = None,
        retries: int | None = None,
        retry_delay: float | None = None,
        encoding: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_id = int(app_id)
        self.timeout = timeout if timeout is not None else settings.softone_timeout_seconds
        self.retries = retries if retries is not None else settings.softone_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.softone_retry_delay
        self.encoding = encoding or settings.softone_response_encoding
        self._transport = transport
        self._client: httpx.Client | None = None
        self._table: _TableResponse | None = None

    @classmethod
    def from_credentials(cls, credentials: ErpCredentials, **kwargs) -> SoftOneClient:
        return cls(credentials.base_url, credentials.app_id, **kwargs)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    "User-Agent": "parksync/1.0",
                },
                transport=self._transport,
            )
        return self._client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None
        self._table = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _decode(self, response: httpx.Response) -> dict | None:
        if not response.content:
            return None
        try:
            return json.loads(response.content.decode(self.encoding, errors="replace"))
        except ValueError:
            return None

    def _handle_response(self, response: httpx.Response) -> dict:
        data = self._decode(response)

        if response.status_code in (401, 403):
            raise ErpAuthError(
                f"Authentication failed: {response.status_code}",
                status_code=response.status_code,
                response=data,
            )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ErpRateLimitError(
                "Rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if response.status_code >= 500:
            raise ErpTransientError(
                f"ERP server error ({response.status_code})",
                status_code=response.status_code,
                response=data,
            )

        if response.status_code >= 400:
            logger.warning("SoftOne API error: status=%s body=%s", response.status_code, data)
            raise ErpBusinessError(
                f"API error ({response.status_code})",
                status_code=response.status_code,
                response=data,
            )

        if not isinstance(data, dict):
            raise ErpTransientError(
                "Unreadable response from ERP",
                status_code=response.status_code,
            )

        if data.get("success") is False or str(data.get("success")).lower() == "false":
            message = data.get("error") or data.get("message") or "ERP request failed"
            code = data.get("errorcode")
            try:
                code = int(code) if code is not None else None
            except (TypeError, ValueError):
                code = None
            if code in AUTH_ERROR_CODES:
                raise ErpAuthError(message, status_code=response.status_code, response=data)
            raise ErpBusinessError(message, status_code=response.status_code, response=data)

        return data

    def _request(self, payload: dict[str, Any]) -> dict:
        """POST one service call with retry logic."""
        client = self._get_client()
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                response = client.post(self.base_url, json=payload)
                return self._handle_response(response)

            except ErpRateLimitError as e:
                last_error = e
                if attempt >= self.retries:
                    break
                wait_time = e.retry_after or (self.retry_delay * (2**attempt))
                logger.warning("SoftOne rate limited, waiting %ss before retry", wait_time)
                time.sleep(wait_time)

            except ErpTransientError as e:
                last_error = e
                if attempt >= self.retries:
                    break
                wait_time = self.retry_delay * (2**attempt)
                logger.warning("SoftOne request failed, retrying in %ss: %s", wait_time, e)
                time.sleep(wait_time)

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = e
                if attempt >= self.retries:
                    break
                wait_time = self.retry_delay * (2**attempt)
                logger.warning("SoftOne connection failed, retrying in %ss: %s", wait_time, e)
                time.sleep(wait_time)

            except httpx.HTTPError as e:
                raise ErpTransientError(f"HTTP error: {e}") from e

        raise ErpTransientError(f"Request failed after {self.retries} retries: {last_error}")

    # ============ Service calls ============

    def authenticate(self, credentials: ErpCredentials) -> str:
        """Log in and return the clientID used as session token."""
        payload = {
            "service": "login",
            "username": credentials.username,
            "password": credentials.password,
            "appId": str(credentials.app_id),
            "COMPANY": str(credentials.company or ""),
            "BRANCH": str(credentials.branch or ""),
            "MODULE": str(credentials.module or ""),
            "REFID": str(credentials.refid or ""),
            "VERSION": str(credentials.version or "1"),
        }
        if credentials.registered_name:
            payload["registeredName"] = credentials.registered_name
        try:
            data = self._request(payload)
        except ErpBusinessError as e:
            raise ErpAuthError(str(e), status_code=e.status_code, response=e.response) from e
        client_id = data.get("clientID")
        if not client_id:
            raise ErpAuthError("Login response has no clientID", response=data)
        logger.info("SOFTONE_LOGIN_OK user=%s app_id=%s", credentials.username, credentials.app_id)
        return client_id

    def get_table(self, token: str, table: str, fields: list[str], filter_expr: str) -> _TableResponse:
        cache_key = (token, table, tuple(fields), filter_expr)
        cached = self._table
        if (
            cached is not None
            and cached.cache_key == cache_key
            and time.monotonic() - cached.fetched_at < self.TABLE_CACHE_SECONDS
        ):
            return cached
        data = self._request(
            {
                "service": "GetTable",
                "clientId": token,
                "appId": self.app_id,
                "version": "1",
                "TABLE": table,
                "FIELDS": ",".join(fields),
                "FILTER": filter_expr,
            }
        )
        rows = data.get("data") or []
        keys = data.get("keys")
        if isinstance(keys, str):
            keys = [key.strip() for key in keys.split(",")]
        columns = list(keys) if keys else list(fields)
        self._table = _TableResponse(cache_key=cache_key, rows=rows, columns=columns, total_count=len(rows))
        logger.info("SOFTONE_GET_TABLE table=%s rows=%d reported=%s", table, len(rows), data.get("count"))
        return self._table

    def fetch_page(
        self,
        token: str,
        table: str,
        fields: list[str],
        filter_expr: str,
        offset: int,
        page_size: int,
    ) -> ErpPage:
        response = self.get_table(token, table, fields, filter_expr)
        rows = response.rows[offset : offset + page_size]
        return ErpPage(rows=rows, total_count=response.total_count, columns=response.columns)

    def push_row(
        self,
        token: str,
        table: str,
        key: str,
        payload: dict[str, Any],
        object_name: str | None = None,
    ) -> str:
        """Insert (empty key) or update one ERP record; returns its id."""
        data = self._request(
            {
                "service": "setData",
                "clientID": token,
                "appId": self.app_id,
                "OBJECT": object_name or table,
                "KEY": key or "",
                "data": {table: [payload]},
                "VERSION": "1",
            }
        )
        record_id = data.get("id")
        if record_id is None or str(record_id) == "":
            record_id = key
        if not record_id:
            raise ErpBusinessError("setData returned no id", response=data)
        return str(record_id)
