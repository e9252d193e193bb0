"""
Attio CRM connector (bidirectional).

- upsert_user: assert a person matched on email, carrying scores + grade
- notify: create a record in the custom "events" object
- fetch_users: page people through the query endpoint
"""
import json
from typing import Any, Dict, List, Optional
import logging

from leadsync.connectors.base import (
    InboundUser, Page, PlatformConnector, SyncWindow
)
from leadsync.errors import FatalError, LeadSyncError
from leadsync.utils import normalize_email, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_DUPLICATE_MARKERS = ("already exists", "unique", "duplicate")


def _first_value(values: Dict[str, Any], attribute: str, key: str) -> Optional[Any]:
    entries = values.get(attribute) or []
    if isinstance(entries, list) and entries and isinstance(entries[0], dict):
        return entries[0].get(key)
    return None


class AttioConnector(PlatformConnector):
    """Attio people + events."""

    platform = "attio"
    base_url = "https://api.attio.com/v2"

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/self")
            return True
        except LeadSyncError as e:
            logger.error(f"Attio connection test failed: {e}")
            return False

    # -- outbound ----------------------------------------------------------

    def build_person_payload(self, user) -> Dict[str, Any]:
        """Person payload with identity and scoring attributes."""
        values: Dict[str, Any] = {"email_addresses": [user.email]}

        if user.first_name or user.last_name or user.full_name:
            full_name = user.full_name or " ".join(
                p for p in (user.first_name, user.last_name) if p
            )
            values["name"] = [{
                "first_name": user.first_name or (full_name.split(" ")[0] if full_name else ""),
                "last_name": user.last_name or " ".join(full_name.split(" ")[1:]),
                "full_name": full_name,
            }]
        if user.company:
            values["description"] = f"Company: {user.company}"
        if user.title:
            values["job_title"] = user.title
        if user.linkedin_profile:
            values["linkedin"] = user.linkedin_profile

        if user.icp_score is not None:
            values["icp_score"] = user.icp_score
        if user.behavior_score is not None:
            values["behaviour_score"] = user.behavior_score
        if user.lead_score is not None:
            values["lead_score"] = user.lead_score
        if user.lead_grade:
            values["icp"] = user.lead_grade

        values["scoring_meta"] = json.dumps({
            "icp_score": user.icp_score,
            "behaviour_score": user.behavior_score,
            "lead_score": user.lead_score,
            "lead_grade": user.lead_grade,
            "scored_at": utcnow().isoformat(),
        })
        return {"data": {"values": values}}

    async def upsert_user(self, user) -> Optional[str]:
        payload = await self._request(
            "PUT",
            "/objects/people/records",
            params={"matching_attribute": "email_addresses"},
            json=self.build_person_payload(user),
        )
        try:
            record_id = payload["data"]["id"]["record_id"]
        except (KeyError, TypeError) as e:
            raise FatalError("attio: malformed person upsert response") from e
        logger.debug(f"Person upserted in Attio: {user.email} -> {record_id}")
        return record_id

    async def notify(self, event, record_id: Optional[str] = None) -> None:
        metadata = event.event_metadata or {}
        values: Dict[str, Any] = {
            "source_channel": event.event_type,
            "source": event.platform,
            "source_id": event.event_key,
            "event_timestamp": (event.occurred_at or event.created_at or utcnow()).isoformat(),
            "event_type": metadata.get("channel") or event.platform,
            "meta_1": json.dumps(metadata, default=str),
            "campaign": event.campaign_name or metadata.get("campaign_id") or "",
        }
        if record_id:
            values["person"] = [{"target_object": "people", "target_record_id": record_id}]

        try:
            await self._request("POST", "/objects/events/records", json={"data": {"values": values}})
        except FatalError as e:
            message = str(e).lower()
            if e.status_code in (400, 409) and "source_id" in message and any(
                marker in message for marker in _DUPLICATE_MARKERS
            ):
                logger.debug(f"Event already exists in Attio: {event.event_key}")
                return
            raise

    # -- inbound -----------------------------------------------------------

    async def fetch_users(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        offset = (cursor or {}).get("offset", 0)
        payload = await self._request(
            "POST",
            "/objects/people/records/query",
            json={"limit": self.batch_size, "offset": offset},
        )
        rows = self._expect_list(self.platform, payload, key="data")

        records: List[InboundUser] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            values = row.get("values") or {}
            email = normalize_email(_first_value(values, "email_addresses", "email_address"))
            if not email:
                continue
            created_at = parse_timestamp(row.get("created_at"))
            if not window.contains(created_at):
                continue
            records.append(InboundUser(
                platform=self.platform,
                email=email,
                first_name=_first_value(values, "name", "first_name"),
                last_name=_first_value(values, "name", "last_name"),
                full_name=_first_value(values, "name", "full_name"),
                title=_first_value(values, "job_title", "value"),
                external_id=(row.get("id") or {}).get("record_id"),
                created_at=created_at,
            ))

        has_more = len(rows) >= self.batch_size
        return Page(
            records=records,
            next_cursor={"offset": offset + len(rows)} if has_more else None,
            has_more=has_more,
        )

    async def fetch_events(self, window: SyncWindow, cursor: Optional[Dict[str, Any]]) -> Page:
        # the CRM is a sink for engagement; nothing to pull
        return Page(records=[], next_cursor=None, has_more=False, total=0)
