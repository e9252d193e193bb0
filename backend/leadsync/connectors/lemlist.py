"""
Lemlist connector.

Basic auth with an empty user and the API key as password. Users are
paged per campaign; events come from the global /activities feed
(offset paging), where each activity names its own campaign.
"""
import re
from typing import Any, Dict, List, Optional
import logging

import httpx

from leadsync.connectors.base import (
    InboundEvent, InboundUser, Page, PlatformConnector, SyncWindow
)
from leadsync.errors import LeadSyncError
from leadsync.utils import normalize_email, parse_timestamp

logger = logging.getLogger(__name__)


# Lemlist activity type -> canonical event type
ACTIVITY_TYPE_MAP = {
    "emailsSent": "Email Sent",
    "emailsOpened": "Email Opened",
    "emailsClicked": "Email Clicked",
    "emailsReplied": "Email Replied",
    "emailsBounced": "Email Bounced",
    "emailsUnsubscribed": "Email Unsubscribed",
    "linkedinSent": "LinkedIn Message Sent",
    "linkedinOpened": "LinkedIn Message Opened",
    "linkedinReplied": "LinkedIn Message Replied",
    "linkedinInviteSent": "LinkedIn Invite Sent",
    "linkedinInviteAccepted": "LinkedIn Invite Accepted",
    "linkedinVisit": "LinkedIn Profile Viewed",
    "linkedinVisitDone": "LinkedIn Profile Viewed",
    "linkedinInterested": "linkedinInterested",
    "meetingBooked": "Meeting Booked",
    "interested": "Interested",
    "notInterested": "Not Interested",
}


def map_activity_type(activity_type: Optional[str]) -> str:
    """
    Canonical name for a Lemlist activity type.

    Unknown types are kept readable: "aircallDone" -> "aircall_done".
    """
    if not activity_type:
        return "unknown"
    if activity_type in ACTIVITY_TYPE_MAP:
        return ACTIVITY_TYPE_MAP[activity_type]
    snake = re.sub(r"([A-Z])", r"_\1", activity_type).lower().lstrip("_")
    return re.sub(r"_+", "_", snake)


class LemlistConnector(PlatformConnector):
    """Lemlist email + LinkedIn campaigns (inbound only)."""

    platform = "lemlist"
    base_url = "https://api.lemlist.com/api"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._campaigns: Optional[List[Dict[str, Any]]] = None

    def _auth(self) -> Optional[httpx.Auth]:
        return httpx.BasicAuth("", self.api_key or "")

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/team")
            return True
        except LeadSyncError as e:
            logger.error(f"Lemlist connection test failed: {e}")
            return False

    async def _get_campaigns(self) -> List[Dict[str, Any]]:
        if self._campaigns is None:
            payload = await self._request("GET", "/campaigns")
            campaigns = self._expect_list(self.platform, payload)
            campaigns = [
                c for c in campaigns
                if isinstance(c, dict) and self._include_campaign(c.get("name"))
            ]
            self._campaigns = sorted(campaigns, key=lambda c: str(c.get("_id")))
            logger.info(f"📋 Lemlist: {len(self._campaigns)} campaigns in scope")
        return self._campaigns

    async def fetch_users(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        campaigns = await self._get_campaigns()
        cursor = cursor or {"campaign_index": 0, "offset": 0}
        index = cursor.get("campaign_index", 0)
        offset = cursor.get("offset", 0)

        if index >= len(campaigns):
            return Page(records=[], next_cursor=None, has_more=False, total=0)

        campaign = campaigns[index]
        payload = await self._request(
            "GET",
            f"/campaigns/{campaign['_id']}/leads",
            params={"offset": offset, "limit": self.batch_size},
        )
        rows = self._expect_list(self.platform, payload)

        records = []
        for lead in rows:
            if not isinstance(lead, dict):
                continue
            email = normalize_email(lead.get("email"))
            if not email:
                continue
            created_at = parse_timestamp(lead.get("createdAt"))
            if not window.contains(created_at):
                continue
            first = lead.get("firstName") or None
            last = lead.get("lastName") or None
            records.append(InboundUser(
                platform=self.platform,
                email=email,
                first_name=first,
                last_name=last,
                full_name=" ".join(p for p in (first, last) if p) or None,
                company=lead.get("companyName") or None,
                title=lead.get("jobTitle") or None,
                linkedin_profile=lead.get("linkedinUrl") or None,
                external_id=lead.get("_id"),
                campaign_id=campaign.get("_id"),
                campaign_name=campaign.get("name"),
                created_at=created_at,
            ))

        if len(rows) < self.batch_size:
            next_cursor = {"campaign_index": index + 1, "offset": 0}
        else:
            next_cursor = {"campaign_index": index, "offset": offset + len(rows)}

        has_more = next_cursor["campaign_index"] < len(campaigns)
        return Page(
            records=records,
            next_cursor=next_cursor if has_more else None,
            has_more=has_more,
        )

    async def fetch_events(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        offset = (cursor or {}).get("offset", 0)
        payload = await self._request(
            "GET",
            "/activities",
            params={"offset": offset, "limit": self.batch_size},
        )
        # the feed answers with a bare list or {"data": [...]}
        key = "data" if isinstance(payload, dict) else None
        rows = self._expect_list(self.platform, payload, key=key)

        records = []
        for activity in rows:
            if not isinstance(activity, dict):
                continue
            event = self._to_event(activity)
            if event is None or not window.contains(event.occurred_at):
                continue
            if not self._include_campaign(event.campaign_name):
                continue
            records.append(event)

        has_more = len(rows) >= self.batch_size
        return Page(
            records=records,
            next_cursor={"offset": offset + len(rows)} if has_more else None,
            has_more=has_more,
        )

    def _to_event(self, activity: Dict[str, Any]) -> Optional[InboundEvent]:
        lead = activity.get("lead") if isinstance(activity.get("lead"), dict) else {}
        email = normalize_email(activity.get("leadEmail") or lead.get("email"))
        if not email:
            return None

        raw_type = activity.get("type")
        metadata = {
            "campaign_id": activity.get("campaignId"),
            "campaign_name": activity.get("campaignName"),
            "original_type": raw_type,
            "channel": "linkedin" if raw_type and "linkedin" in raw_type.lower() else "email",
        }
        if activity.get("sentiment"):
            metadata["sentiment"] = activity["sentiment"]

        return InboundEvent(
            platform=self.platform,
            event_type=map_activity_type(raw_type),
            email=email,
            external_id=activity.get("_id"),
            campaign_id=activity.get("campaignId"),
            campaign_name=activity.get("campaignName"),
            occurred_at=parse_timestamp(activity.get("createdAt")),
            metadata=metadata,
            first_name=activity.get("leadFirstName") or lead.get("firstName"),
            last_name=activity.get("leadLastName") or lead.get("lastName"),
            company=activity.get("companyName") or lead.get("companyName"),
            linkedin_profile=activity.get("linkedinUrl") or lead.get("linkedinUrl"),
        )
