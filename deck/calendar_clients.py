from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import requests

from deck.errors import AuthExpired, ProviderCallFailed, ProviderUnavailable, RefreshDenied
from deck.models import (
    AppConfig,
    CalendarAccount,
    Credentials,
    ProviderConfig,
    RemoteEvent,
    parse_iso_datetime,
)


logger = logging.getLogger(__name__)

GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GRAPH_EVENTS_URL = "https://graph.microsoft.com/v1.0/me/calendar/events"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPES = "offline_access User.Read Calendars.Read"

PAGE_SIZE = 500
MAX_PAGES = 20

REJECTED_GRANT_ERRORS = {"invalid_grant"}

FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def _oauth_error(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("error") or "")


def _trim_fraction(text: str) -> str:
    # Graph returns 7 fractional digits; datetime accepts at most 6.
    return FRACTION_PATTERN.sub(r"\1", text)


def _expiry_from(payload: dict[str, Any], now: datetime) -> datetime | None:
    expires_in = payload.get("expires_in")
    if expires_in is None:
        return None
    return now + timedelta(seconds=int(expires_in))


def google_event_to_remote(item: dict[str, Any]) -> RemoteEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    timed_start = start.get("dateTime")
    start_time = parse_iso_datetime(timed_start or start.get("date"))
    end_time = parse_iso_datetime(end.get("dateTime") or end.get("date"))
    return RemoteEvent(
        external_id=str(item.get("id", "")).strip(),
        title=str(item.get("summary") or ""),
        description=item.get("description") or None,
        start_time=start_time,
        end_time=end_time,
        all_day=not timed_start,
        cancelled=item.get("status") == "cancelled",
    )


def _graph_datetime(value: dict[str, Any] | None) -> datetime | None:
    if not value or not value.get("dateTime"):
        return None
    text = _trim_fraction(str(value["dateTime"]))
    if value.get("timeZone") == "UTC" and not text.endswith("Z"):
        text += "Z"
    return parse_iso_datetime(text)


def outlook_event_to_remote(item: dict[str, Any]) -> RemoteEvent:
    return RemoteEvent(
        external_id=str(item.get("id", "")).strip(),
        title=str(item.get("subject") or ""),
        description=item.get("bodyPreview") or None,
        start_time=_graph_datetime(item.get("start")),
        end_time=_graph_datetime(item.get("end")),
        all_day=bool(item.get("isAllDay", False)),
        cancelled=bool(item.get("isCancelled", False)),
    )


class CalendarClient:
    """List events and refresh credentials against one calendar provider."""

    provider = ""
    token_url = ""

    def __init__(self, config: ProviderConfig, timeout_seconds: int = 20) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds

    def is_configured(self) -> bool:
        return self.config.is_complete()

    def list_events(self, account: CalendarAccount, start: datetime, end: datetime) -> list[RemoteEvent]:
        raise NotImplementedError

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        return {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def refresh_credentials(self, account: CalendarAccount) -> Credentials:
        """Run the refresh_token grant.

        Only a missing refresh token or an ``invalid_grant`` answer means the
        user has to reconnect; outages and malformed answers are provider-call
        failures like any other.
        """
        refresh_token = account.credentials.refresh_token
        if not refresh_token:
            raise RefreshDenied(self.provider, "no refresh token stored")
        now = datetime.now(timezone.utc)
        try:
            response = requests.post(
                self.token_url,
                data=self._refresh_params(refresh_token),
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ProviderUnavailable(
                self.provider, f"token refresh timed out after {self.timeout_seconds}s"
            ) from exc
        except requests.RequestException as exc:
            raise ProviderUnavailable(self.provider, f"token refresh failed: {type(exc).__name__}: {exc}") from exc
        if response.status_code in {400, 401} and _oauth_error(response) in REJECTED_GRANT_ERRORS:
            raise RefreshDenied(self.provider, f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 500:
            raise ProviderUnavailable(self.provider, f"token refresh HTTP {response.status_code}")
        if not response.ok:
            raise ProviderCallFailed(
                self.provider, f"token refresh HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderCallFailed(self.provider, "token response is not JSON") from exc
        access_token = str(payload.get("access_token", "") or "")
        if not access_token:
            raise ProviderCallFailed(self.provider, "token response without access_token")
        return Credentials(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=_expiry_from(payload, now),
        )

    def _get_json(
        self,
        url: str,
        account: CalendarAccount,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        request_headers = {"Authorization": f"Bearer {account.credentials.access_token}"}
        request_headers.update(headers or {})
        try:
            response = requests.get(url, headers=request_headers, params=params, timeout=self.timeout_seconds)
        except requests.Timeout as exc:
            raise ProviderUnavailable(self.provider, f"timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise ProviderUnavailable(self.provider, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code in {401, 403}:
            raise AuthExpired(self.provider, f"HTTP {response.status_code}")
        if not response.ok:
            raise ProviderUnavailable(self.provider, f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderCallFailed(self.provider, "response is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderCallFailed(self.provider, "response root must be an object")
        return payload


class GoogleCalendarClient(CalendarClient):
    provider = "google"
    token_url = GOOGLE_TOKEN_URL

    def list_events(self, account: CalendarAccount, start: datetime, end: datetime) -> list[RemoteEvent]:
        url = GOOGLE_EVENTS_URL.format(calendar_id=quote(account.calendar_id or "primary", safe=""))
        params: dict[str, Any] = {
            "timeMin": start.astimezone(timezone.utc).isoformat(),
            "timeMax": end.astimezone(timezone.utc).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }
        events: list[RemoteEvent] = []
        for _ in range(MAX_PAGES):
            payload = self._get_json(url, account, params=params)
            events.extend(google_event_to_remote(item) for item in payload.get("items") or [])
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params = dict(params, pageToken=page_token)
        else:
            logger.warning("google listing for account %s truncated after %d pages", account.id, MAX_PAGES)
        return events


class OutlookCalendarClient(CalendarClient):
    provider = "outlook"
    token_url = MICROSOFT_TOKEN_URL

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        params = super()._refresh_params(refresh_token)
        params["scope"] = MICROSOFT_SCOPES
        return params

    def list_events(self, account: CalendarAccount, start: datetime, end: datetime) -> list[RemoteEvent]:
        time_min = start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        time_max = end.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        headers = {"Prefer": 'outlook.timezone="UTC"'}
        url: str = GRAPH_EVENTS_URL
        params: dict[str, Any] | None = {
            "$filter": f"start/dateTime ge '{time_min}' and start/dateTime lt '{time_max}'",
            "$top": PAGE_SIZE,
            "$orderby": "start/dateTime",
        }
        events: list[RemoteEvent] = []
        for _ in range(MAX_PAGES):
            payload = self._get_json(url, account, params=params, headers=headers)
            events.extend(outlook_event_to_remote(item) for item in payload.get("value") or [])
            next_link = payload.get("@odata.nextLink")
            if not next_link:
                break
            # nextLink already carries the query string.
            url, params = str(next_link), None
        else:
            logger.warning("outlook listing for account %s truncated after %d pages", account.id, MAX_PAGES)
        return events


def build_clients(config: AppConfig) -> dict[str, CalendarClient]:
    timeout = config.sync.http_timeout_seconds
    return {
        "google": GoogleCalendarClient(config.google, timeout_seconds=timeout),
        "outlook": OutlookCalendarClient(config.outlook, timeout_seconds=timeout),
    }
