"""
Ledger event sinks.

Every match creation and status change is stored as a LedgerEvent row by
the registry. Sinks are the outbound, best-effort notification of those
events to a notarization service; a failing sink never fails the
operation that produced the event.
"""

from typing import Any, Dict, Optional

import requests

from .database import LedgerEvent, Match
from .logger import get_logger
from .retry import RetryError, exponential_backoff, should_retry_http_status

logger = get_logger()

EVENT_MATCH_FOUND = "ai_match_found"
EVENT_MATCH_APPROVAL = "match_approval"
EVENT_MATCH_REJECTION = "match_rejection"
EVENT_TRANSPLANT_COMPLETION = "transplant_completion"


class RetryableStatus(Exception):
    """Notarization endpoint answered with a status worth retrying."""
    pass


def event_payload(event: LedgerEvent, match: Match) -> Dict[str, Any]:
    return {
        "tx_hash": event.tx_hash,
        "type": event.type,
        "match_id": match.id,
        "donor_id": match.donor_id,
        "recipient_id": match.recipient_id,
        "organ_type": match.organ_type,
        "compatibility_score": match.compatibility_score,
        "status": match.status,
        "timestamp": event.created_at.isoformat() if event.created_at else None,
        "data": event.data or {},
    }


class LoggingEventSink:
    """Default sink: writes each event to the structured log."""

    def emit(self, payload: Dict[str, Any]) -> None:
        logger.info(
            "Ledger event recorded",
            type=payload.get("type"),
            tx_hash=payload.get("tx_hash"),
            match_id=payload.get("match_id"),
        )
        logger.record_event(True)


class HttpEventSink:
    """POSTs each event as JSON to a notarization endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()
        self._post = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError, RetryableStatus),
        )(self._post_once)

    def _post_once(self, payload: Dict[str, Any]):
        resp = self.http.post(self.url, json=payload, timeout=self.timeout)
        if should_retry_http_status(resp.status_code):
            raise RetryableStatus(f"HTTP {resp.status_code}")
        resp.raise_for_status()
        return resp

    def emit(self, payload: Dict[str, Any]) -> None:
        try:
            self._post(payload)
        except (RetryError, requests.exceptions.RequestException) as e:
            logger.warning(
                "Ledger notification failed",
                url=self.url,
                tx_hash=payload.get("tx_hash"),
                error=str(e),
            )
            logger.record_event(False)
            return
        logger.debug("Ledger notification sent", url=self.url, tx_hash=payload.get("tx_hash"))
        logger.record_event(True)


def notify(sink, event: LedgerEvent, match: Match) -> None:
    """Hand an already-persisted event to a sink without letting it fail the caller."""
    if sink is None:
        return
    try:
        sink.emit(event_payload(event, match))
    except Exception as e:
        logger.error("Event sink raised", sink=type(sink).__name__, tx_hash=event.tx_hash, error=str(e))
        logger.record_event(False)
