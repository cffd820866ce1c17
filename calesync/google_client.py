from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from datetime import date, datetime
from typing import Any, Callable
from urllib.parse import quote

import requests

from calesync.errors import (
    AuthError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RemoteAPIError,
    ServerError,
    SyncTokenExpiredError,
)
from calesync.models import (
    CalendarPage,
    EventPage,
    GoogleAPIConfig,
    RemoteCalendar,
    RemoteEvent,
    date_to_datetime,
    parse_iso_datetime,
    serialize_datetime,
)
from calesync.retry import RetryExecutor, RetryStats


logger = logging.getLogger(__name__)

ENTRY_ID_PROPERTY = "entryId"
APP_PROPERTIES = {"app": "calesync", "schema": "1"}
PAGE_SIZE = 250


class StaticTokenProvider:
    """Returns a fixed bearer token; stands in for the external auth collaborator."""

    def __init__(self, token: str) -> None:
        self.token = token

    def __call__(self) -> str:
        if not self.token:
            raise AuthError("No access token configured.")
        return self.token


def _parse_event_time(payload: dict[str, Any] | None, is_end: bool) -> tuple[datetime | None, bool]:
    if not payload:
        return None, False
    if payload.get("dateTime"):
        return parse_iso_datetime(str(payload["dateTime"])), False
    if payload.get("date"):
        return date_to_datetime(date.fromisoformat(str(payload["date"])), is_end=is_end), True
    return None, False


def parse_event(calendar_id: str, item: dict[str, Any]) -> RemoteEvent:
    start, all_day = _parse_event_time(item.get("start"), is_end=False)
    end, _ = _parse_event_time(item.get("end"), is_end=True)
    private = ((item.get("extendedProperties") or {}).get("private")) or {}
    linked = str(private.get(ENTRY_ID_PROPERTY, "")).strip() or None
    return RemoteEvent(
        calendar_id=calendar_id,
        event_id=str(item.get("id", "")),
        status=str(item.get("status", "confirmed") or "confirmed"),
        title=str(item.get("summary", "") or ""),
        body=str(item.get("description", "") or ""),
        start=start,
        end=end,
        all_day=all_day,
        updated_at=parse_iso_datetime(item.get("updated")),
        linked_entry_id=linked,
    )


def build_event_body(
    *,
    title: str,
    body: str,
    start: datetime,
    end: datetime,
    entry_id: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "summary": title,
        "description": body,
        "start": {"dateTime": serialize_datetime(start)},
        "end": {"dateTime": serialize_datetime(end)},
    }
    if entry_id:
        payload["extendedProperties"] = {
            "private": {**APP_PROPERTIES, ENTRY_ID_PROPERTY: entry_id},
        }
    return payload


def _retry_after_seconds(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
        message = (payload.get("error") or {}).get("message")
        if message:
            return str(message)
    except ValueError:
        pass
    return response.text[:300] or response.reason or "request failed"


def raise_for_status(response: requests.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    message = _error_message(response)
    if status in {401, 403}:
        raise AuthError(message, status_code=status)
    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status == 410:
        raise SyncTokenExpiredError(message, status_code=status)
    if status == 429:
        raise RateLimitedError(message, status_code=status, retry_after=_retry_after_seconds(response))
    if 500 <= status < 600:
        raise ServerError(message, status_code=status)
    raise RemoteAPIError(message, status_code=status)


class GoogleCalendarClient:
    def __init__(
        self,
        config: GoogleAPIConfig,
        token_provider: Callable[[], str],
        *,
        retry_executor: RetryExecutor | None = None,
        session: requests.Session | None = None,
        min_request_interval: float = 0.1,
        default_policy: str = "default",
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.retry_executor = retry_executor or RetryExecutor(sleep=sleep)
        self.session = session or requests.Session()
        self.min_request_interval = max(0.1, float(min_request_interval))
        self.default_policy = default_policy
        self._sleep = sleep
        self._monotonic = monotonic
        self._spacing_lock = threading.Lock()
        self._last_request_at: float | None = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _enforce_spacing(self) -> None:
        with self._spacing_lock:
            now = self._monotonic()
            if self._last_request_at is not None:
                elapsed = now - self._last_request_at
                if elapsed < self.min_request_interval:
                    self._sleep(self.min_request_interval - elapsed)
                    now = self._monotonic()
            self._last_request_at = now

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        body: dict[str, Any] | None,
    ) -> dict[str, Any]:
        self._enforce_spacing()
        token = self.token_provider()
        try:
            response = self.session.request(
                method,
                self._url(path),
                params=params,
                json=body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise NetworkError("Request timed out.", cause=exc) from exc
        except requests.ConnectionError as exc:
            raise NetworkError("Connection failed.", cause=exc) from exc
        except requests.RequestException as exc:
            raise NetworkError("Request failed.", cause=exc) from exc

        raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise InvalidResponseError(
                "Response body is not valid JSON.", status_code=response.status_code, cause=exc
            ) from exc
        if not isinstance(payload, dict):
            raise InvalidResponseError("Response root must be an object.", status_code=response.status_code)
        return payload

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        policy: str | None = None,
        stats: RetryStats | None = None,
    ) -> dict[str, Any]:
        digest = hashlib.sha1(  # nosec B324
            json.dumps([params or {}, body or {}], sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()
        key = f"{method} {path} {digest}"
        return self.retry_executor.execute(
            key,
            lambda: self._send(method, path, params, body),
            policy=policy or self.default_policy,
            stats=stats,
        )

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        sync_token: str | None = None,
        page_token: str | None = None,
        private_property: tuple[str, str] | None = None,
        policy: str | None = None,
        stats: RetryStats | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {"maxResults": PAGE_SIZE, "singleEvents": "true"}
        if sync_token:
            # The service rejects time bounds alongside a sync token.
            params["syncToken"] = sync_token
        else:
            if time_min is not None:
                params["timeMin"] = serialize_datetime(time_min)
            if time_max is not None:
                params["timeMax"] = serialize_datetime(time_max)
            if private_property is not None:
                params["privateExtendedProperty"] = f"{private_property[0]}={private_property[1]}"
        if page_token:
            params["pageToken"] = page_token

        payload = self._request(
            "GET", self._events_path(calendar_id), params=params, policy=policy, stats=stats
        )
        items = [
            parse_event(calendar_id, item)
            for item in payload.get("items", []) or []
            if isinstance(item, dict) and item.get("id")
        ]
        return EventPage(
            items=items,
            next_page_token=payload.get("nextPageToken") or None,
            next_sync_token=payload.get("nextSyncToken") or None,
        )

    def get_event(
        self, calendar_id: str, event_id: str, *, policy: str | None = None, stats: RetryStats | None = None
    ) -> RemoteEvent:
        payload = self._request(
            "GET", self._events_path(calendar_id, event_id), policy=policy, stats=stats
        )
        return parse_event(calendar_id, payload)

    def find_event_by_entry_id(
        self, calendar_id: str, entry_id: str, *, policy: str | None = None, stats: RetryStats | None = None
    ) -> RemoteEvent | None:
        page = self.list_events(
            calendar_id,
            private_property=(ENTRY_ID_PROPERTY, entry_id),
            policy=policy,
            stats=stats,
        )
        for item in page.items:
            if not item.is_cancelled:
                return item
        return None

    def insert_event(
        self,
        calendar_id: str,
        body: dict[str, Any],
        *,
        policy: str | None = None,
        stats: RetryStats | None = None,
    ) -> RemoteEvent:
        payload = self._request(
            "POST", self._events_path(calendar_id), body=body, policy=policy, stats=stats
        )
        event = parse_event(calendar_id, payload)
        logger.info("Inserted remote event %s", event.event_id)
        return event

    def update_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        *,
        policy: str | None = None,
        stats: RetryStats | None = None,
    ) -> RemoteEvent:
        payload = self._request(
            "PUT", self._events_path(calendar_id, event_id), body=body, policy=policy, stats=stats
        )
        logger.info("Updated remote event %s", event_id)
        return parse_event(calendar_id, payload)

    def delete_event(
        self, calendar_id: str, event_id: str, *, policy: str | None = None, stats: RetryStats | None = None
    ) -> None:
        self._request("DELETE", self._events_path(calendar_id, event_id), policy=policy, stats=stats)
        logger.info("Deleted remote event %s", event_id)

    def list_calendars(
        self,
        page_token: str | None = None,
        *,
        policy: str | None = None,
        stats: RetryStats | None = None,
    ) -> CalendarPage:
        params: dict[str, Any] = {}
        if page_token:
            params["pageToken"] = page_token
        payload = self._request(
            "GET", "/users/me/calendarList", params=params, policy=policy, stats=stats
        )
        items: list[RemoteCalendar] = []
        for item in payload.get("items", []) or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            items.append(
                RemoteCalendar(
                    calendar_id=str(item["id"]),
                    summary=str(item.get("summaryOverride") or item.get("summary") or item["id"]),
                    primary=bool(item.get("primary", False)),
                    color_id=item.get("colorId"),
                )
            )
        return CalendarPage(items=items, next_page_token=payload.get("nextPageToken") or None)
