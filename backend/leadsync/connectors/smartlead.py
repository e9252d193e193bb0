"""
Smartlead connector.

API key travels as a query parameter. Users come from each campaign's
lead list, events from each campaign's statistics feed; both are paged
with offset/limit inside a campaign, so the cursor is
{"campaign_index", "offset"}.
"""
from typing import Any, Dict, List, Optional
import logging

from leadsync.connectors.base import (
    InboundEvent, InboundUser, Page, PlatformConnector, SyncWindow
)
from leadsync.errors import LeadSyncError
from leadsync.utils import normalize_email, parse_timestamp

logger = logging.getLogger(__name__)


# statistics column -> canonical event type
STAT_EVENT_COLUMNS = [
    ("sent_time", "Email Sent"),
    ("open_time", "Email Opened"),
    ("click_time", "Email Clicked"),
    ("reply_time", "Email Replied"),
]


class SmartleadConnector(PlatformConnector):
    """Smartlead email campaigns (inbound only)."""

    platform = "smartlead"
    base_url = "https://server.smartlead.ai/api/v1"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._campaigns: Optional[List[Dict[str, Any]]] = None

    def _auth_params(self) -> Dict[str, Any]:
        return {"api_key": self.api_key}

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/campaigns")
            return True
        except LeadSyncError as e:
            logger.error(f"Smartlead connection test failed: {e}")
            return False

    async def _get_campaigns(self) -> List[Dict[str, Any]]:
        """Campaign list, cached per connector and sorted by id for stable cursors."""
        if self._campaigns is None:
            payload = await self._request("GET", "/campaigns")
            campaigns = self._expect_list(self.platform, payload)
            campaigns = [
                c for c in campaigns
                if isinstance(c, dict) and self._include_campaign(c.get("name"))
            ]
            self._campaigns = sorted(campaigns, key=lambda c: str(c.get("id")))
            logger.info(f"📋 Smartlead: {len(self._campaigns)} campaigns in scope")
        return self._campaigns

    async def _page_campaign(
        self,
        cursor: Optional[Dict[str, Any]],
        path_template: str,
        convert,
        total_key: Optional[str] = None,
    ) -> Page:
        campaigns = await self._get_campaigns()
        cursor = cursor or {"campaign_index": 0, "offset": 0}
        index = cursor.get("campaign_index", 0)
        offset = cursor.get("offset", 0)

        if index >= len(campaigns):
            return Page(records=[], next_cursor=None, has_more=False, total=0)

        campaign = campaigns[index]
        payload = await self._request(
            "GET",
            path_template.format(campaign_id=campaign["id"]),
            params={"offset": offset, "limit": self.batch_size},
        )
        rows = self._expect_list(self.platform, payload, key="data")

        records = []
        for row in rows:
            if isinstance(row, dict):
                records.extend(convert(row, campaign))

        # each campaign reports its size once, on its first page
        total = None
        if total_key and offset == 0 and isinstance(payload, dict):
            try:
                total = int(payload.get(total_key) or 0)
            except (TypeError, ValueError):
                total = None

        if len(rows) < self.batch_size:
            next_cursor = {"campaign_index": index + 1, "offset": 0}
        else:
            next_cursor = {"campaign_index": index, "offset": offset + len(rows)}

        has_more = next_cursor["campaign_index"] < len(campaigns)
        return Page(
            records=records,
            next_cursor=next_cursor if has_more else None,
            has_more=has_more,
            total=total,
        )

    async def fetch_users(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        def convert(row: Dict[str, Any], campaign: Dict[str, Any]) -> List[InboundUser]:
            lead = row.get("lead") if isinstance(row.get("lead"), dict) else row
            email = normalize_email(lead.get("email"))
            if not email:
                return []
            created_at = parse_timestamp(lead.get("created_at") or row.get("created_at"))
            if not window.contains(created_at):
                return []
            first = lead.get("first_name") or None
            last = lead.get("last_name") or None
            full = lead.get("name") or " ".join(p for p in (first, last) if p) or None
            return [InboundUser(
                platform=self.platform,
                email=email,
                first_name=first,
                last_name=last,
                full_name=full,
                company=lead.get("company_name") or lead.get("company") or None,
                linkedin_profile=lead.get("linkedin_profile") or lead.get("linkedin_url") or None,
                external_id=str(lead["id"]) if lead.get("id") is not None else None,
                campaign_id=str(campaign.get("id")),
                campaign_name=campaign.get("name"),
                created_at=created_at,
            )]

        return await self._page_campaign(
            cursor, "/campaigns/{campaign_id}/leads", convert, total_key="total_leads"
        )

    async def fetch_events(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        def convert(row: Dict[str, Any], campaign: Dict[str, Any]) -> List[InboundEvent]:
            email = normalize_email(row.get("lead_email"))
            if not email:
                return []
            events = []
            stats_id = row.get("stats_id")
            for column, event_type in STAT_EVENT_COLUMNS:
                occurred_at = parse_timestamp(row.get(column))
                if occurred_at is None or not window.contains(occurred_at):
                    continue
                metadata = {
                    "campaign_id": campaign.get("id"),
                    "campaign_name": campaign.get("name"),
                    "sequence_number": row.get("sequence_number"),
                    "email_subject": row.get("email_subject"),
                }
                if event_type == "Email Replied" and row.get("sentiment"):
                    metadata["sentiment"] = row.get("sentiment")
                events.append(InboundEvent(
                    platform=self.platform,
                    event_type=event_type,
                    email=email,
                    external_id=f"{stats_id}:{column}" if stats_id else None,
                    campaign_id=str(campaign.get("id")),
                    campaign_name=campaign.get("name"),
                    occurred_at=occurred_at,
                    metadata=metadata,
                ))
            return events

        return await self._page_campaign(
            cursor, "/campaigns/{campaign_id}/statistics", convert, total_key="total_stats"
        )
