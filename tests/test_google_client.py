import json
import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from calesync.errors import (
    AuthError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    SyncTokenExpiredError,
)
from calesync.google_client import (
    GoogleCalendarClient,
    StaticTokenProvider,
    build_event_body,
    parse_event,
)
from calesync.models import GoogleAPIConfig
from calesync.retry import RetryExecutor, RetryStats


def _response(status: int, payload: object = None, headers: dict | None = None, raw: bytes | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    if raw is not None:
        response._content = raw
    elif payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = b""
    response.headers.update(headers or {})
    return response


class GoogleCalendarClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.session = mock.Mock()
        self.ticks = iter(range(0, 100000, 10))
        self.client = GoogleCalendarClient(
            GoogleAPIConfig(access_token="token"),
            StaticTokenProvider("token"),
            retry_executor=RetryExecutor(sleep=self.sleeps.append),
            session=self.session,
            sleep=self.sleeps.append,
            monotonic=lambda: float(next(self.ticks)),
        )

    def _params(self, call_index: int = 0) -> dict:
        return self.session.request.call_args_list[call_index].kwargs["params"]

    def test_incremental_list_never_sends_time_bounds(self) -> None:
        self.session.request.return_value = _response(200, {"items": [], "nextSyncToken": "s2"})
        page = self.client.list_events(
            "primary",
            time_min=datetime(2026, 1, 1, tzinfo=timezone.utc),
            time_max=datetime(2026, 2, 1, tzinfo=timezone.utc),
            sync_token="s1",
        )
        params = self._params()
        self.assertEqual(params["syncToken"], "s1")
        self.assertNotIn("timeMin", params)
        self.assertNotIn("timeMax", params)
        self.assertEqual(params["singleEvents"], "true")
        self.assertEqual(params["maxResults"], 250)
        self.assertEqual(page.next_sync_token, "s2")

    def test_full_list_sends_window_and_bearer_token(self) -> None:
        self.session.request.return_value = _response(
            200,
            {
                "items": [
                    {
                        "id": "e1",
                        "status": "confirmed",
                        "summary": "Standup",
                        "updated": "2026-01-02T10:00:00Z",
                        "start": {"dateTime": "2026-01-05T09:00:00Z"},
                        "end": {"dateTime": "2026-01-05T09:30:00Z"},
                    }
                ],
                "nextPageToken": "p2",
            },
        )
        page = self.client.list_events(
            "work@example.com",
            time_min=datetime(2026, 1, 1, tzinfo=timezone.utc),
            time_max=datetime(2026, 2, 1, tzinfo=timezone.utc),
        )
        call = self.session.request.call_args
        self.assertEqual(call.args[0], "GET")
        self.assertIn("/calendars/work%40example.com/events", call.args[1])
        self.assertEqual(call.kwargs["headers"]["Authorization"], "Bearer token")
        self.assertIn("timeMin", call.kwargs["params"])
        self.assertEqual(page.next_page_token, "p2")
        self.assertIsNone(page.next_sync_token)
        self.assertEqual(page.items[0].title, "Standup")

    def test_status_410_is_not_retried(self) -> None:
        self.session.request.return_value = _response(410, {"error": {"message": "Sync token is no longer valid"}})
        with self.assertRaises(SyncTokenExpiredError) as ctx:
            self.client.list_events("primary", sync_token="old")
        self.assertEqual(ctx.exception.status_code, 410)
        self.assertEqual(self.session.request.call_count, 1)

    def test_status_404_maps_to_not_found(self) -> None:
        self.session.request.return_value = _response(404, {"error": {"message": "Not Found"}})
        with self.assertRaises(NotFoundError):
            self.client.delete_event("primary", "missing")

    def test_status_401_maps_to_auth_error(self) -> None:
        self.session.request.return_value = _response(401, {"error": {"message": "Invalid Credentials"}})
        with self.assertRaises(AuthError):
            self.client.list_calendars()
        self.assertEqual(self.session.request.call_count, 1)

    def test_rate_limit_honours_retry_after(self) -> None:
        self.session.request.side_effect = [
            _response(429, {"error": {"message": "Rate Limit Exceeded"}}, headers={"Retry-After": "3"}),
            _response(200, {"items": []}),
        ]
        stats = RetryStats()
        self.client.list_events("primary", stats=stats)
        self.assertEqual(self.session.request.call_count, 2)
        self.assertTrue(stats.rate_limited)
        self.assertEqual(stats.retry_count, 1)
        self.assertGreaterEqual(max(self.sleeps), 3)

    def test_server_error_then_success(self) -> None:
        self.session.request.side_effect = [
            _response(503, {"error": {"message": "Backend Error"}}),
            _response(200, {"id": "e1", "status": "confirmed", "updated": "2026-01-02T10:00:00Z"}),
        ]
        event = self.client.get_event("primary", "e1")
        self.assertEqual(event.event_id, "e1")

    def test_connection_errors_exhaust_the_policy(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(NetworkError):
            self.client.list_events("primary", policy="conservative")
        self.assertEqual(self.session.request.call_count, 3)

    def test_invalid_json_body(self) -> None:
        self.session.request.return_value = _response(200, raw=b"<html>")
        with self.assertRaises(InvalidResponseError):
            self.client.list_events("primary")

    def test_empty_body_on_delete(self) -> None:
        self.session.request.return_value = _response(204)
        self.client.delete_event("primary", "e1")
        self.assertEqual(self.session.request.call_args.args[0], "DELETE")

    def test_requests_are_spaced(self) -> None:
        client = GoogleCalendarClient(
            GoogleAPIConfig(),
            StaticTokenProvider("token"),
            retry_executor=RetryExecutor(sleep=self.sleeps.append),
            session=self.session,
            sleep=self.sleeps.append,
            monotonic=lambda: 0.0,
        )
        self.session.request.return_value = _response(200, {"items": []})
        client.list_events("primary")
        client.list_events("secondary")
        self.assertEqual(len(self.sleeps), 1)
        self.assertAlmostEqual(self.sleeps[0], 0.1)

    def test_find_event_by_entry_id_uses_private_property(self) -> None:
        self.session.request.return_value = _response(
            200,
            {
                "items": [
                    {
                        "id": "e9",
                        "status": "confirmed",
                        "extendedProperties": {"private": {"entryId": "entry-1"}},
                    }
                ]
            },
        )
        event = self.client.find_event_by_entry_id("primary", "entry-1")
        self.assertEqual(self._params()["privateExtendedProperty"], "entryId=entry-1")
        self.assertEqual(event.linked_entry_id, "entry-1")

    def test_insert_sends_body(self) -> None:
        body = build_event_body(
            title="Note",
            body="text",
            start=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
            end=datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
            entry_id="entry-1",
        )
        self.session.request.return_value = _response(200, {"id": "new", "status": "confirmed", **body})
        event = self.client.insert_event("primary", body)
        self.assertEqual(self.session.request.call_args.kwargs["json"], body)
        self.assertEqual(event.linked_entry_id, "entry-1")


class ParsingTests(unittest.TestCase):
    def test_all_day_event(self) -> None:
        event = parse_event(
            "primary",
            {"id": "e1", "start": {"date": "2026-01-05"}, "end": {"date": "2026-01-06"}},
        )
        self.assertTrue(event.all_day)
        self.assertEqual(event.start, datetime(2026, 1, 5, tzinfo=timezone.utc))

    def test_cancelled_item_without_details(self) -> None:
        event = parse_event("primary", {"id": "e1", "status": "cancelled"})
        self.assertTrue(event.is_cancelled)
        self.assertIsNone(event.start)
        self.assertIsNone(event.linked_entry_id)

    def test_event_body_private_properties(self) -> None:
        body = build_event_body(
            title="Note",
            body="",
            start=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
            end=datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
            entry_id="entry-1",
        )
        self.assertEqual(
            body["extendedProperties"]["private"],
            {"app": "calesync", "schema": "1", "entryId": "entry-1"},
        )

    def test_missing_token_raises_auth_error(self) -> None:
        with self.assertRaises(AuthError):
            StaticTokenProvider("")()


if __name__ == "__main__":
    unittest.main()
