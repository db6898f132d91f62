"""
Client for the provider's message history API.

GET {base}/messages?phoneNumberId=..&participants=..&participants=..
    &maxResults=..&createdAfter=<ISO-8601>
Authorization: Bearer <credential>

Response: {"data": [{id, from, to, direction, text|body, status, createdAt}, ...]}
"""

import logging
from datetime import datetime
from typing import Optional

import httpx
from pydantic import ValidationError

from convo_mirror.errors import RemoteFetchFailure
from convo_mirror.events import MessagePayload
from convo_mirror.utils import isoformat_ms

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class HistoryClient:
    """
    Thin httpx wrapper around the history endpoint.

    Every transport error, non-2xx status or undecodable body surfaces as
    RemoteFetchFailure. Individual records that fail validation are dropped
    with a warning so one bad record does not hide the rest of the page.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def list_messages(
        self,
        credential: str,
        phone_number_id: str,
        participants: list[str],
        max_results: int,
        created_after: datetime,
    ) -> list[MessagePayload]:
        params = [
            ("phoneNumberId", phone_number_id),
            *[("participants", p) for p in participants],
            ("maxResults", str(min(max_results, MAX_PAGE_SIZE))),
            ("createdAfter", isoformat_ms(created_after)),
        ]
        headers = {"Authorization": f"Bearer {credential}", "Accept": "application/json"}

        logger.debug(f"Fetching history: phoneNumberId={phone_number_id}, participants={participants}")

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(f"{self.base_url}/messages", params=params, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteFetchFailure(
                f"history request failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RemoteFetchFailure(f"history request failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise RemoteFetchFailure(f"history response is not JSON: {e}") from e

        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise RemoteFetchFailure("history response has no 'data' array")

        messages = []
        for record in body["data"]:
            try:
                messages.append(MessagePayload.model_validate(record))
            except ValidationError as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning(f"Skipping malformed history record {record_id}: {e.error_count()} errors")
        return messages
