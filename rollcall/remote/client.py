"""Async client for the Supabase REST (PostgREST) backend.

Every public call returns ``(data, error)`` instead of raising, so callers
decide what a failure means through the error policy table.
"""

import asyncio
import logging
from typing import Any, Iterable

import httpx

from ..errors import SyncError, SyncErrorKind
from .session import SessionProvider

logger = logging.getLogger(__name__)

# Postgres error classes reported by PostgREST in the "code" field
_CONSTRAINT_CODES = ("23505", "23503", "23502", "23514")

_RESERVED = set(',()" ')


def _quote(value: Any) -> str:
    text = str(value)
    if any(ch in _RESERVED for ch in text):
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text


def filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
    """Translate ``{column: value}`` filters into PostgREST query params.

    Scalars become ``eq.``, lists/tuples/sets become ``in.(...)`` and None
    becomes ``is.null``.
    """
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, (list, tuple, set, frozenset)):
            params[column] = "in.(" + ",".join(_quote(v) for v in value) + ")"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


def _extract_detail(response: httpx.Response) -> tuple[str, str | None]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error") or payload.get("hint")
        return str(message or payload), payload.get("code")
    return str(payload), None


def classify_response(response: httpx.Response) -> SyncError:
    """Map a non-success response onto the error taxonomy."""
    message, code = _extract_detail(response)
    status = response.status_code

    if status in (401, 403) or (code or "").startswith("PGRST30"):
        kind = SyncErrorKind.AUTH
    elif status == 409 or (code or "").startswith(_CONSTRAINT_CODES):
        kind = SyncErrorKind.CONSTRAINT
    elif status >= 500:
        kind = SyncErrorKind.NETWORK
    else:
        kind = SyncErrorKind.PROTOCOL

    return SyncError(kind=kind, message=message, status_code=status, code=code)


class RemoteStore:
    """PostgREST client with retry and typed outcomes.

    Tracks reachability: ``is_online`` flips to True whenever the server
    answers and to False when it cannot be reached.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session_provider: SessionProvider | None = None,
        max_retries: int = 3,
        timeout: float = 10.0,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the remote store client.

        Args:
            base_url: Project URL (e.g., "https://xyz.supabase.co").
            api_key: Publishable/anon key sent as ``apikey``.
            session_provider: Supplies the user's bearer token.
            max_retries: Maximum attempts for retryable failures.
            timeout: Request timeout in seconds.
            backoff_seconds: Initial backoff between attempts.
            transport: Optional httpx transport (tests).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session_provider = session_provider
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._online = False
        self._consecutive_failures = 0

    @property
    def is_online(self) -> bool:
        """Whether the last request reached the server."""
        return self._online

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _endpoint(self, path: str) -> str:
        return f"{self.base_url}/rest/v1/{path.lstrip('/')}"

    async def _headers(self, prefer: str | None = None) -> dict[str, str]:
        token = self.api_key
        if self.session_provider is not None:
            session = await self.session_provider.get_session()
            if session:
                token = session.token

        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json_data: Any = None,
        prefer: str | None = None,
    ) -> tuple[Any, SyncError | None]:
        """Make an HTTP request with exponential backoff retry.

        Args:
            method: HTTP method.
            path: Path below ``/rest/v1/``.
            params: Query parameters.
            json_data: Optional JSON body.
            prefer: Optional PostgREST ``Prefer`` header.

        Returns:
            Tuple of (response_data, error).
        """
        url = self._endpoint(path)
        headers = await self._headers(prefer)
        backoff = self.backoff_seconds
        error: SyncError | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, url, params=params, json=json_data, headers=headers
                    )
                except httpx.ConnectError as e:
                    self._online = False
                    error = SyncError(SyncErrorKind.NETWORK, f"Connection failed: {e}")
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException as e:
                    self._online = False
                    error = SyncError(SyncErrorKind.NETWORK, f"Request timeout: {e}")
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    self._online = False
                    self._consecutive_failures += 1
                    logger.error(f"Request error: {e}")
                    return None, SyncError(SyncErrorKind.NETWORK, str(e))
                else:
                    self._online = True
                    if response.is_success:
                        self._consecutive_failures = 0
                        if response.status_code == 204 or not response.content:
                            return None, None
                        try:
                            return response.json(), None
                        except ValueError as e:
                            return None, SyncError(
                                SyncErrorKind.PROTOCOL,
                                f"Invalid JSON from {path}: {e}",
                                status_code=response.status_code,
                            )

                    error = classify_response(response)
                    if response.status_code < 500:
                        # Client error, don't retry
                        self._consecutive_failures += 1
                        logger.warning(f"{method} {path} rejected: {error}")
                        return None, error
                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                if attempt < self.max_retries - 1 and backoff > 0:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, error or SyncError(
            SyncErrorKind.NETWORK, f"Max retries ({self.max_retries}) exceeded"
        )

    # ==================== Table Operations ====================

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], SyncError | None]:
        """Fetch rows from a table.

        Args:
            table: Table name.
            filters: Column filters (see ``filter_params``).
            columns: PostgREST select expression.
            limit: Optional row limit.

        Returns:
            Tuple of (rows, error).
        """
        params = {"select": columns, **filter_params(filters)}
        if limit is not None:
            params["limit"] = str(limit)

        data, error = await self._request_with_retry("GET", table, params=params)
        if error:
            return [], error
        if data is None:
            return [], None
        if not isinstance(data, list):
            return [], SyncError(SyncErrorKind.PROTOCOL, f"Expected rows from {table}")
        return data, None

    async def upsert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        on_conflict: Iterable[str] | None = None,
        ignore_duplicates: bool = False,
    ) -> tuple[list[dict[str, Any]], SyncError | None]:
        """Insert or update a batch of rows in one request.

        Rows may omit columns (e.g. ``id`` for rows the server should
        create); missing columns take their database defaults.

        Args:
            table: Table name.
            rows: Rows to write.
            on_conflict: Columns of the unique constraint to merge on
                (primary key when omitted).
            ignore_duplicates: Keep existing rows instead of merging.

        Returns:
            Tuple of (rows as stored by the server, error).
        """
        if not rows:
            return [], None

        columns: list[str] = []
        for row in rows:
            for column in row:
                if column not in columns:
                    columns.append(column)

        params = {"columns": ",".join(columns)}
        if on_conflict:
            params["on_conflict"] = ",".join(on_conflict)

        resolution = "ignore-duplicates" if ignore_duplicates else "merge-duplicates"
        prefer = f"return=representation,resolution={resolution},missing=default"

        data, error = await self._request_with_retry(
            "POST", table, params=params, json_data=rows, prefer=prefer
        )
        if error:
            return [], error
        if data is None:
            return [], None
        if not isinstance(data, list):
            data = [data]
        return data, None

    async def delete(
        self,
        table: str,
        filters: dict[str, Any],
    ) -> tuple[None, SyncError | None]:
        """Delete rows matching ``filters``.

        Refuses to run without filters.
        """
        if not filters:
            return None, SyncError(
                SyncErrorKind.PROTOCOL, f"Refusing unfiltered delete on {table}"
            )

        _, error = await self._request_with_retry(
            "DELETE", table, params=filter_params(filters), prefer="return=minimal"
        )
        return None, error

    async def rpc(
        self, name: str, params: dict[str, Any] | None = None
    ) -> tuple[Any, SyncError | None]:
        """Call a database function."""
        return await self._request_with_retry("POST", f"rpc/{name}", json_data=params or {})

    async def check_online(self) -> bool:
        """Probe the backend and record reachability.

        Returns:
            True if the server answered.
        """
        _, error = await self.select("clubs", columns="id", limit=0)
        if error and error.kind == SyncErrorKind.NETWORK:
            self._online = False
        logger.info(f"Online status: {'connected' if self._online else 'offline'}")
        return self._online
