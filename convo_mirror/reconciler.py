"""
Historical reconciler: back-fills a conversation from provider history.

Best-effort by contract. Remote failures are logged and counted, never
raised to the caller; the next trigger (e.g. the conversation being opened
again) simply retries. Each remote message is written with insert-if-absent,
so a concurrent webhook delivery of the same id converges to one record.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from convo_mirror.errors import DataIntegrityConflict, RemoteFetchFailure
from convo_mirror.history import HistoryClient
from convo_mirror.metrics import (
    record_backfill_messages,
    record_backfill_run,
    record_integrity_conflict,
)
from convo_mirror.schemas import ConversationUpdate
from convo_mirror.store import ConversationStore, UpsertOutcome
from convo_mirror.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
DEFAULT_LOOKBACK = timedelta(days=30)


@dataclass
class ReconcileReport:
    conversation_id: str
    fetched: int = 0
    inserted: int = 0
    existing: int = 0
    conflicts: int = 0
    foreign: int = 0
    skipped: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def result(self) -> str:
        if self.error:
            return "failed"
        if self.skipped:
            return "skipped"
        if self.cancelled:
            return "cancelled"
        return "completed"


class HistoricalReconciler:
    def __init__(
        self,
        store: ConversationStore,
        client: HistoryClient,
        page_size: int = DEFAULT_PAGE_SIZE,
        lookback: timedelta = DEFAULT_LOOKBACK,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.page_size = page_size
        self.lookback = lookback
        self.clock = clock

    def reconcile(
        self,
        conversation_id: str,
        credential: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileReport:
        """
        Ensure every remote message in the look-back window exists locally.

        Args:
            conversation_id: Conversation to back-fill
            credential: Opaque bearer token for the history API
            cancel_event: Optional event; once set, the run stops before the
                next message and the report is marked cancelled

        Returns:
            ReconcileReport with counts; never raises for remote failures
        """
        report = ReconcileReport(conversation_id=conversation_id)

        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or not conversation.phone_number_id:
            logger.info(f"Backfill skipped, conversation not known locally: {conversation_id}")
            report.skipped = True
            return self._finish(report)

        # An unfiltered query would return every message on the line
        if not conversation.participants:
            logger.warning(f"Backfill skipped, conversation has no participants: {conversation_id}")
            report.skipped = True
            return self._finish(report)

        try:
            remote = self.client.list_messages(
                credential=credential,
                phone_number_id=conversation.phone_number_id,
                participants=conversation.participants,
                max_results=self.page_size,
                created_after=self.clock() - self.lookback,
            )
        except RemoteFetchFailure as e:
            logger.warning(f"Backfill fetch failed for {conversation_id}: {e}")
            report.error = str(e)
            return self._finish(report)

        # Ascending creation order keeps lastActivityAt merges moving forward
        remote.sort(key=lambda m: (m.created_at, m.id))
        report.fetched = len(remote)
        newest = None

        for payload in remote:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Backfill cancelled for {conversation_id}")
                report.cancelled = True
                break

            # Messages never move between conversations
            if payload.conversation_id is not None and payload.conversation_id != conversation_id:
                logger.warning(
                    f"Backfill dropped message {payload.id}: belongs to "
                    f"{payload.conversation_id}, not {conversation_id}"
                )
                report.foreign += 1
                continue

            try:
                outcome = self.store.upsert_message(
                    conversation_id, payload.to_message(), update_status=False
                )
            except DataIntegrityConflict as e:
                logger.error(
                    f"Data integrity conflict from backfill: {e}",
                    extra={"conversation_id": e.conversation_id, "message_id": e.message_id,
                           "fields": e.fields, "source": "backfill"},
                )
                record_integrity_conflict("backfill")
                report.conflicts += 1
                continue

            if outcome == UpsertOutcome.CREATED:
                report.inserted += 1
                newest = payload.created_at
            else:
                report.existing += 1

        if newest is not None:
            # Keep lastActivityAt >= every stored message's createdAt
            self.store.merge_conversation(ConversationUpdate(
                conversation_id=conversation_id,
                last_activity_at=newest,
            ))

        return self._finish(report)

    def _finish(self, report: ReconcileReport) -> ReconcileReport:
        record_backfill_run(report.result)
        record_backfill_messages("inserted", report.inserted)
        record_backfill_messages("existing", report.existing)
        record_backfill_messages("foreign", report.foreign)
        logger.info(
            f"Backfill {report.result}: conversation={report.conversation_id}, "
            f"fetched={report.fetched}, inserted={report.inserted}, "
            f"existing={report.existing}, conflicts={report.conflicts}, "
            f"foreign={report.foreign}"
        )
        return report
