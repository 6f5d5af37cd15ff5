"""Appwrite Users API adapter for user accounts and their preferences."""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from . import config
from .errors import PreferenceStoreError, UserNotFoundError
from .preferences import UserAccount


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _ensure_appwrite_config() -> tuple[str, str, str]:
    """Return validated Appwrite config values."""
    if not config.APPWRITE_ENDPOINT:
        raise PreferenceStoreError(
            "Appwrite is not configured. Missing APPWRITE_ENDPOINT "
            "(or NEXT_PUBLIC_APPWRITE_ENDPOINT)."
        )
    if not config.APPWRITE_PROJECT_ID:
        raise PreferenceStoreError(
            "Appwrite is not configured. Missing APPWRITE_PROJECT_ID "
            "(or NEXT_PUBLIC_APPWRITE_PROJECT_ID)."
        )
    if not config.APPWRITE_API_KEY:
        raise PreferenceStoreError(
            "Appwrite is not configured. Missing APPWRITE_API_KEY."
        )
    return (
        config.APPWRITE_ENDPOINT.rstrip("/"),
        config.APPWRITE_PROJECT_ID,
        config.APPWRITE_API_KEY,
    )


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract a readable error from Appwrite's error shape."""
    if isinstance(payload, dict):
        return payload.get("message") or payload.get("type") or fallback
    return fallback


def _query(method: str, values: Sequence[Any], attribute: str | None = None) -> str:
    """Encode an Appwrite JSON query."""
    query: Dict[str, Any] = {"method": method, "values": list(values)}
    if attribute is not None:
        query["attribute"] = attribute
    return json.dumps(query, separators=(",", ":"))


async def _api_request(
    method: str,
    path: str,
    *,
    params: Optional[List[Tuple[str, str]]] = None,
    json_body: Optional[Dict[str, Any]] = None,
):
    """Make an authenticated request to the Appwrite server API."""
    endpoint, project_id, api_key = _ensure_appwrite_config()
    url = f"{endpoint}{path}"

    headers: Dict[str, str] = {
        "X-Appwrite-Project": project_id,
        "X-Appwrite-Key": api_key,
    }
    if json_body is not None:
        headers["Content-Type"] = "application/json"

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
            )
    except httpx.HTTPError as error:
        raise PreferenceStoreError(f"Appwrite request failed: {error}") from error

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        raise PreferenceStoreError(
            _extract_error_message(
                payload, f"Appwrite request failed ({response.status_code})."
            ),
            status_code=response.status_code,
        )

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return None


def _parse_user_list(payload: Any) -> List[UserAccount]:
    """Convert an Appwrite user list payload into accounts."""
    if not isinstance(payload, dict) or not isinstance(payload.get("users"), list):
        raise PreferenceStoreError("Invalid users payload from Appwrite.", status_code=502)
    return [
        UserAccount.from_appwrite(user)
        for user in payload["users"]
        if isinstance(user, dict)
    ]


async def get_user(user_id: str) -> UserAccount:
    """Fetch a single user with a fresh copy of their preferences."""
    try:
        payload = await _api_request("GET", f"/users/{user_id}")
    except PreferenceStoreError as error:
        if error.status_code == 404:
            raise UserNotFoundError(user_id) from error
        raise

    if not isinstance(payload, dict):
        raise PreferenceStoreError("Invalid user payload from Appwrite.", status_code=502)
    return UserAccount.from_appwrite(payload)


async def list_users(limit: int, offset: int) -> List[UserAccount]:
    """Return one page of users using offset pagination."""
    safe_limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    safe_offset = max(0, int(offset))
    payload = await _api_request(
        "GET",
        "/users",
        params=[
            ("queries[]", _query("limit", [safe_limit])),
            ("queries[]", _query("offset", [safe_offset])),
        ],
    )
    return _parse_user_list(payload)


async def find_user_by_email(email: str) -> UserAccount | None:
    """Return the user registered with an email address, if any."""
    payload = await _api_request(
        "GET",
        "/users",
        params=[
            ("queries[]", _query("equal", [email], attribute="email")),
            ("queries[]", _query("limit", [1])),
        ],
    )
    users = _parse_user_list(payload)
    if not users:
        return None
    return users[0]


async def update_preferences(user_id: str, preferences: Dict[str, Any]) -> Dict[str, Any]:
    """Persist a full, already merged preferences bag for a user."""
    try:
        payload = await _api_request(
            "PATCH",
            f"/users/{user_id}/prefs",
            json_body={"prefs": preferences},
        )
    except PreferenceStoreError as error:
        if error.status_code == 404:
            raise UserNotFoundError(user_id) from error
        raise

    if isinstance(payload, dict):
        return payload
    return dict(preferences)


async def list_user_sessions(user_id: str) -> List[Dict[str, Any]]:
    """Return active sessions for a user."""
    payload = await _api_request("GET", f"/users/{user_id}/sessions")
    sessions = payload.get("sessions") if isinstance(payload, dict) else None
    if not isinstance(sessions, list):
        return []
    return [session for session in sessions if isinstance(session, dict)]


async def delete_user_sessions(user_id: str) -> None:
    """Sign a user out of every session."""
    await _api_request("DELETE", f"/users/{user_id}/sessions")


async def count_users(page_size: int = MAX_PAGE_SIZE) -> int:
    """Count users by walking every page."""
    page_size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    total = 0
    offset = 0
    while True:
        page = await list_users(page_size, offset)
        total += len(page)
        if len(page) < page_size:
            break
        offset += page_size
    return total


async def list_all_users(page_size: int = MAX_PAGE_SIZE) -> List[UserAccount]:
    """Load every user, paginating until a short page is returned."""
    page_size = max(1, min(int(page_size), MAX_PAGE_SIZE))
    users: List[UserAccount] = []
    offset = 0
    while True:
        page = await list_users(page_size, offset)
        users.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    logger.debug("Loaded %d users from Appwrite", len(users))
    return users
