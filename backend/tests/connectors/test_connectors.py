# tests/connectors/test_connectors.py
"""
Connector tests against httpx.MockTransport.

Coverage:
- HTTP / transport error classification
- Cursor paging per platform
- Campaign and window filtering
- Attio upsert + event write-back

Run with: pytest tests/connectors/test_connectors.py -v
"""

import base64
import json
from datetime import datetime

import httpx
import pytest

from leadsync.connectors import get_connector
from leadsync.connectors.attio import AttioConnector
from leadsync.connectors.base import SyncWindow, classify_http_status
from leadsync.connectors.lemlist import LemlistConnector, map_activity_type
from leadsync.connectors.smartlead import SmartleadConnector
from leadsync.errors import FatalError, RetryableError
from leadsync.models import EventRecord, UserRecord
from leadsync.services.rate_limiter import RateLimiter


@pytest.fixture
def limiter():
    return RateLimiter("test", requests_per_second=1000, max_batch_size=100)


def connector_for(cls, handler, limiter, api_key="key", **kwargs):
    return cls(api_key, limiter, transport=httpx.MockTransport(handler), **kwargs)


def respond_with(status, body=None, headers=None):
    def handler(request):
        return httpx.Response(status, json=body, headers=headers)
    return handler


# ============================================================================
# TEST: Error classification
# ============================================================================

class TestClassification:

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_retryable(self, status):
        error = classify_http_status("smartlead", status, "oops")
        assert isinstance(error, RetryableError)
        assert error.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 402, 403, 404])
    def test_client_errors_are_fatal(self, status):
        assert isinstance(classify_http_status("smartlead", status), FatalError)

    def test_rate_limit_carries_retry_after(self):
        error = classify_http_status("lemlist", 429, retry_after="3")
        assert isinstance(error, RetryableError)
        assert error.retry_after == 3.0
        assert classify_http_status("lemlist", 429, retry_after="soon").retry_after is None

    def test_success_is_not_an_error(self):
        assert classify_http_status("attio", 204) is None

    @pytest.mark.asyncio
    async def test_request_raises_classified_errors(self, limiter):
        connector = connector_for(
            SmartleadConnector, respond_with(429, {}, {"Retry-After": "2"}), limiter
        )
        with pytest.raises(RetryableError) as exc_info:
            await connector.fetch_users(SyncWindow(), None)
        assert exc_info.value.retry_after == 2.0
        await connector.aclose()

        connector = connector_for(SmartleadConnector, respond_with(401, {"error": "bad key"}), limiter)
        with pytest.raises(FatalError):
            await connector.fetch_users(SyncWindow(), None)
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_transport_errors_are_retryable(self, limiter):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        connector = connector_for(LemlistConnector, refuse, limiter)
        with pytest.raises(RetryableError):
            await connector.fetch_events(SyncWindow(), None)
        assert connector.requests_made == 1
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_missing_key_is_fatal_without_a_request(self, limiter):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[])

        connector = connector_for(SmartleadConnector, handler, limiter, api_key=None)
        with pytest.raises(FatalError):
            await connector.fetch_users(SyncWindow(), None)
        assert calls == []
        assert await connector.test_connection() is False
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_schema_is_fatal(self, limiter):
        connector = connector_for(SmartleadConnector, respond_with(200, {"campaigns": "nope"}), limiter)
        with pytest.raises(FatalError):
            await connector.fetch_users(SyncWindow(), None)
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_malformed_json_is_fatal(self, limiter):
        connector = connector_for(
            LemlistConnector, lambda request: httpx.Response(200, content=b"<html>"), limiter
        )
        with pytest.raises(FatalError):
            await connector.fetch_events(SyncWindow(), None)
        await connector.aclose()

    def test_unknown_platform(self, limiter):
        with pytest.raises(ValueError):
            get_connector("hubspot", "key", limiter)


# ============================================================================
# TEST: Smartlead
# ============================================================================

SMARTLEAD_CAMPAIGNS = [
    {"id": 2, "name": "Generic Outreach"},
    {"id": 1, "name": "ACME Corp Outreach"},
]

SMARTLEAD_LEADS = {
    "1": [
        {"lead": {"id": 11, "email": "A@Example.com", "first_name": "Ada", "last_name": "Lovelace",
                  "company_name": "Acme", "created_at": "2026-03-01T10:00:00Z"}},
        {"lead": {"id": 12, "email": "b@example.com", "created_at": "2026-03-02T10:00:00Z"}},
        {"lead": {"id": 13, "email": "c@example.com", "created_at": "2026-03-03T10:00:00Z"}},
    ],
    "2": [
        {"lead": {"id": 21, "email": "d@example.com", "created_at": "2025-01-01T00:00:00Z"}},
    ],
}


def smartlead_handler(seen):
    def handler(request):
        seen.append(request)
        path = request.url.path
        if path.endswith("/campaigns"):
            return httpx.Response(200, json=SMARTLEAD_CAMPAIGNS)
        if path.endswith("/leads"):
            campaign_id = path.split("/")[-2]
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            rows = SMARTLEAD_LEADS[campaign_id][offset:offset + limit]
            return httpx.Response(200, json={"data": rows, "total_leads": len(SMARTLEAD_LEADS[campaign_id])})
        if path.endswith("/statistics"):
            return httpx.Response(200, json={"data": [{
                "stats_id": "s1",
                "lead_email": "a@example.com",
                "sent_time": "2026-03-01T10:00:00Z",
                "open_time": "2026-03-01T11:00:00Z",
                "reply_time": "2026-03-02T09:00:00Z",
                "sentiment": "positive",
                "sequence_number": 1,
            }], "total_stats": 1})
        return httpx.Response(404)
    return handler


class TestSmartlead:

    @pytest.mark.asyncio
    async def test_pages_through_campaigns(self, limiter):
        seen = []
        connector = connector_for(SmartleadConnector, smartlead_handler(seen), limiter, batch_size=2)
        window = SyncWindow()

        first = await connector.fetch_users(window, None)
        assert [u.email for u in first.records] == ["a@example.com", "b@example.com"]
        assert first.next_cursor == {"campaign_index": 0, "offset": 2}
        assert first.total == 3

        second = await connector.fetch_users(window, first.next_cursor)
        assert [u.email for u in second.records] == ["c@example.com"]
        assert second.next_cursor == {"campaign_index": 1, "offset": 0}
        assert second.total is None

        third = await connector.fetch_users(window, second.next_cursor)
        assert [u.email for u in third.records] == ["d@example.com"]
        assert third.has_more is False
        assert third.next_cursor is None
        # the second campaign reports its own size on its first page
        assert third.total == 1

        user = first.records[0]
        assert user.first_name == "Ada"
        assert user.full_name == "Ada Lovelace"
        assert user.company == "Acme"
        assert user.external_id == "11"
        assert user.campaign_name == "ACME Corp Outreach"
        assert all(r.url.params["api_key"] == "key" for r in seen)
        # campaigns are listed once per connector
        assert sum(r.url.path.endswith("/campaigns") for r in seen) == 1
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_campaign_filter_and_window(self, limiter):
        seen = []
        connector = connector_for(
            SmartleadConnector, smartlead_handler(seen), limiter, batch_size=10,
            campaign_filter=lambda name: "generic" in (name or "").lower(),
        )

        page = await connector.fetch_users(SyncWindow(start=datetime(2026, 1, 1)), None)

        assert page.records == []
        assert not any("/campaigns/1/" in r.url.path for r in seen)
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_statistics_become_events(self, limiter):
        connector = connector_for(SmartleadConnector, smartlead_handler([]), limiter, batch_size=10)

        page = await connector.fetch_events(SyncWindow(end=datetime(2026, 3, 1, 12)), None)

        # the reply happened after the window end
        types = [e.event_type for e in page.records if e.campaign_name == "ACME Corp Outreach"]
        assert types == ["Email Sent", "Email Opened"]
        assert page.records[0].external_id == "s1:sent_time"
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_reply_sentiment_is_kept(self, limiter):
        connector = connector_for(SmartleadConnector, smartlead_handler([]), limiter, batch_size=10)
        page = await connector.fetch_events(SyncWindow(), None)
        replies = [e for e in page.records if e.event_type == "Email Replied"]
        assert replies and replies[0].metadata["sentiment"] == "positive"
        await connector.aclose()


# ============================================================================
# TEST: Lemlist
# ============================================================================

class TestLemlist:

    def test_activity_type_mapping(self):
        assert map_activity_type("emailsReplied") == "Email Replied"
        assert map_activity_type("linkedinInterested") == "linkedinInterested"
        assert map_activity_type("aircallDone") == "aircall_done"
        assert map_activity_type(None) == "unknown"

    @pytest.mark.asyncio
    async def test_basic_auth_and_activity_paging(self, limiter):
        seen = []
        activities = [
            {"_id": f"act{i}", "type": "emailsOpened", "leadEmail": f"u{i}@example.com",
             "campaignName": "ACME Q3", "createdAt": "2026-03-01T10:00:00Z"}
            for i in range(3)
        ]

        def handler(request):
            seen.append(request)
            offset = int(request.url.params["offset"])
            limit = int(request.url.params["limit"])
            return httpx.Response(200, json=activities[offset:offset + limit])

        connector = connector_for(LemlistConnector, handler, limiter, batch_size=2)

        first = await connector.fetch_events(SyncWindow(), None)
        assert [e.external_id for e in first.records] == ["act0", "act1"]
        assert first.next_cursor == {"offset": 2}

        second = await connector.fetch_events(SyncWindow(), first.next_cursor)
        assert [e.external_id for e in second.records] == ["act2"]
        assert second.has_more is False

        expected = "Basic " + base64.b64encode(b":key").decode()
        assert seen[0].headers["Authorization"] == expected
        assert first.records[0].event_type == "Email Opened"
        assert first.records[0].metadata["channel"] == "email"
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_activity_campaign_filter(self, limiter):
        activities = [
            {"_id": "a1", "type": "emailsSent", "leadEmail": "a@example.com", "campaignName": "ACME Q3"},
            {"_id": "a2", "type": "emailsSent", "leadEmail": "b@example.com", "campaignName": "Other"},
        ]
        connector = connector_for(
            LemlistConnector, respond_with(200, {"data": activities}), limiter, batch_size=10,
            campaign_filter=lambda name: name == "ACME Q3",
        )
        page = await connector.fetch_events(SyncWindow(), None)
        assert [e.external_id for e in page.records] == ["a1"]
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_leads_per_campaign(self, limiter):
        def handler(request):
            if request.url.path.endswith("/campaigns"):
                return httpx.Response(200, json=[{"_id": "cam_1", "name": "ACME Q3"}])
            return httpx.Response(200, json=[
                {"_id": "lea_1", "email": "ada@example.com", "firstName": "Ada", "jobTitle": "CTO"},
            ])

        connector = connector_for(LemlistConnector, handler, limiter, batch_size=10)
        page = await connector.fetch_users(SyncWindow(), None)

        assert page.has_more is False
        user = page.records[0]
        assert user.title == "CTO"
        assert user.external_id == "lea_1"
        assert user.campaign_name == "ACME Q3"
        await connector.aclose()


# ============================================================================
# TEST: Attio
# ============================================================================

class TestAttio:

    @pytest.mark.asyncio
    async def test_upsert_person(self, limiter):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"id": {"record_id": "rec-1"}}})

        connector = connector_for(AttioConnector, handler, limiter)
        user = UserRecord(email="ada@example.com", first_name="Ada", last_name="Lovelace",
                          icp_score=40, behavior_score=20, lead_score=60, lead_grade="B")

        assert await connector.upsert_user(user) == "rec-1"
        assert seen["method"] == "PUT"
        assert seen["params"]["matching_attribute"] == "email_addresses"
        assert seen["auth"] == "Bearer key"
        values = seen["body"]["data"]["values"]
        assert values["email_addresses"] == ["ada@example.com"]
        assert values["lead_score"] == 60
        assert values["icp"] == "B"
        assert values["name"][0]["full_name"] == "Ada Lovelace"
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_malformed_upsert_response(self, limiter):
        connector = connector_for(AttioConnector, respond_with(200, {"data": {}}), limiter)
        with pytest.raises(FatalError):
            await connector.upsert_user(UserRecord(email="a@example.com"))
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_notify_links_event_to_person(self, limiter):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {}})

        connector = connector_for(AttioConnector, handler, limiter)
        event = EventRecord(event_key="smartlead:s1:reply_time", event_type="Email Replied",
                            platform="smartlead", campaign_name="Q3",
                            event_metadata={"channel": "email"}, occurred_at=datetime(2026, 3, 2, 9))

        await connector.notify(event, record_id="rec-1")

        values = seen["body"]["data"]["values"]
        assert values["source_id"] == "smartlead:s1:reply_time"
        assert values["person"] == [{"target_object": "people", "target_record_id": "rec-1"}]
        assert values["event_timestamp"] == "2026-03-02T09:00:00"
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_duplicate_event_is_ignored(self, limiter):
        connector = connector_for(
            AttioConnector,
            respond_with(409, {"message": "A record with source_id already exists"}),
            limiter,
        )
        event = EventRecord(event_key="k", event_type="Email Opened", platform="lemlist")
        await connector.notify(event)
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_people_query_paging(self, limiter):
        rows = [
            {"id": {"record_id": "r1"},
             "values": {"email_addresses": [{"email_address": "Ada@Example.com"}],
                        "name": [{"first_name": "Ada", "last_name": "L", "full_name": "Ada L"}]}},
            {"id": {"record_id": "r2"}, "values": {}},
        ]
        connector = connector_for(AttioConnector, respond_with(200, {"data": rows}), limiter, batch_size=2)

        page = await connector.fetch_users(SyncWindow(), None)

        assert [u.email for u in page.records] == ["ada@example.com"]
        assert page.records[0].external_id == "r1"
        assert page.next_cursor == {"offset": 2}
        events = await connector.fetch_events(SyncWindow(), None)
        assert events.records == [] and events.has_more is False
        await connector.aclose()
