"""REST client for the screens table of the backing store."""
import httpx
import logging
from pydantic import ValidationError
from typing import Optional, Any, Dict

from kiosklink.core.config import settings
from kiosklink.core.errors import (
    StoreTransportError,
    RowNotFoundError,
    UniqueViolationError,
    StoreRequestError,
)
from kiosklink.schemas.screens import Screen, ScreenInsert, ScreenHeartbeat

logger = logging.getLogger(__name__)

# PostgREST reports "zero rows for a single-object request" with this code
NO_ROWS_CODE = "PGRST116"
# Postgres unique_violation
UNIQUE_VIOLATION_CODE = "23505"

SINGLE_OBJECT = "application/vnd.pgrst.object+json"
SCREEN_COLUMNS = "id,code,name,assigned_path,last_seen,current_page,user_agent,created_at"
INVALID_RESPONSE_CODE = "INVALID_RESPONSE"


def _parse_screen(data: Any) -> Screen:
    try:
        return Screen.model_validate(data)
    except ValidationError as e:
        raise StoreRequestError(INVALID_RESPONSE_CODE, f"Unexpected screen row: {e}") from e


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ScreenStore:
    """
    Client for the `screens` table exposed by a PostgREST-compatible endpoint.

    Every call maps failures onto the store error taxonomy:
    transport problems become StoreTransportError, "no matching row" becomes
    RowNotFoundError, a code collision becomes UniqueViolationError and any
    other rejection becomes StoreRequestError.
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        table: str = None,
        timeout: float = None,
        client: httpx.Client = None,
    ):
        base_url = base_url or settings.store_url
        api_key = api_key if api_key is not None else settings.store_api_key
        self.table = table or settings.screens_table
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            base_url=f"{base_url}/rest/v1",
            headers=headers,
            timeout=timeout or settings.store_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        params: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
        single: bool = False,
        screen_id: Optional[str] = None,
    ) -> Any:
        headers = {}
        if single:
            headers["Accept"] = SINGLE_OBJECT
        if method in ("POST", "PATCH"):
            headers["Prefer"] = "return=representation"

        try:
            response = self._client.request(
                method, f"/{self.table}", params=params, json=json, headers=headers
            )
        except httpx.TransportError as e:
            # Covers timeouts, connection refused and DNS failures
            raise StoreTransportError(f"{method} {self.table} failed: {e}") from e

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                # Captive portals and proxies answer 200 with HTML
                raise StoreRequestError(
                    INVALID_RESPONSE_CODE, f"{method} {self.table} returned a non-JSON body: {e}",
                    status_code=response.status_code,
                ) from e

        body = _error_body(response)
        code = str(body.get("code") or f"HTTP_{response.status_code}")
        message = body.get("message") or response.reason_phrase

        if code == NO_ROWS_CODE:
            raise RowNotFoundError(screen_id)
        if code == UNIQUE_VIOLATION_CODE:
            raise UniqueViolationError(message)
        raise StoreRequestError(code, message, status_code=response.status_code)

    def get_screen(self, screen_id: str) -> Screen:
        """Point lookup by id. Raises RowNotFoundError when the row is gone."""
        data = self._request(
            "GET",
            {"id": f"eq.{screen_id}", "select": SCREEN_COLUMNS},
            single=True,
            screen_id=screen_id,
        )
        return _parse_screen(data)

    def find_latest_by_name(self, name: str) -> Optional[Screen]:
        """Most recently seen screen carrying this hostname, or None."""
        rows = self._request(
            "GET",
            {
                "name": f"eq.{name}",
                "select": SCREEN_COLUMNS,
                "order": "last_seen.desc.nullslast",
                "limit": "1",
            },
        )
        if not rows:
            return None
        if not isinstance(rows, list):
            raise StoreRequestError(INVALID_RESPONSE_CODE, f"Expected a list of screens, got {type(rows).__name__}")
        return _parse_screen(rows[0])

    def insert_screen(self, screen: ScreenInsert) -> Screen:
        """Create a screen row. Raises UniqueViolationError when the code is taken."""
        data = self._request(
            "POST",
            {"select": SCREEN_COLUMNS},
            json=screen.model_dump(mode="json", exclude_none=True),
            single=True,
        )
        return _parse_screen(data)

    def heartbeat(self, screen_id: str, beat: ScreenHeartbeat) -> Screen:
        """
        Write liveness fields and read back the row in the same request.

        The returned row carries the authoritative `assigned_path`.
        Raises RowNotFoundError when the row has been deleted.
        """
        data = self._request(
            "PATCH",
            {"id": f"eq.{screen_id}", "select": SCREEN_COLUMNS},
            json=beat.model_dump(mode="json", exclude_none=True),
            single=True,
            screen_id=screen_id,
        )
        return _parse_screen(data)
