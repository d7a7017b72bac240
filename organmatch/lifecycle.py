"""
Match Lifecycle Manager.

A match moves pending -> approved | rejected, then approved -> completed.
Rejected and completed are terminal. Approval and completion also move the
linked donor and recipient, and every change writes a ledger event. All of
that is applied by a StatusChange command inside one unit of work, so the
match, donor, recipient and ledger either all change or none do.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Set, Tuple

from .database import (
    DONOR_ACTIVE,
    DONOR_DONATED,
    DONOR_MATCHED,
    MATCH_APPROVED,
    MATCH_COMPLETED,
    MATCH_PENDING,
    MATCH_REJECTED,
    RECIPIENT_MATCHED,
    RECIPIENT_RECEIVED,
    RECIPIENT_WAITING,
    LedgerEvent,
    Match,
)
from .errors import IllegalTransition, InvalidInput, NotFound
from .ledger import (
    EVENT_MATCH_APPROVAL,
    EVENT_MATCH_REJECTION,
    EVENT_TRANSPLANT_COMPLETION,
    notify,
)
from .logger import get_logger
from .storage import SqlRegistry

logger = get_logger()

TRANSITIONS: Dict[str, Set[str]] = {
    MATCH_PENDING: {MATCH_APPROVED, MATCH_REJECTED},
    MATCH_APPROVED: {MATCH_COMPLETED},
    MATCH_REJECTED: set(),
    MATCH_COMPLETED: set(),
}

# target match status -> (donor status, recipient status)
PARTY_STATUS: Dict[str, Tuple[str, str]] = {
    MATCH_APPROVED: (DONOR_MATCHED, RECIPIENT_MATCHED),
    MATCH_COMPLETED: (DONOR_DONATED, RECIPIENT_RECEIVED),
}

# target match status -> (donor status, recipient status) the parties must hold
PARTY_REQUIRED: Dict[str, Tuple[str, str]] = {
    MATCH_APPROVED: (DONOR_ACTIVE, RECIPIENT_WAITING),
    MATCH_COMPLETED: (DONOR_MATCHED, RECIPIENT_MATCHED),
}

EVENT_FOR_STATUS = {
    MATCH_APPROVED: EVENT_MATCH_APPROVAL,
    MATCH_REJECTED: EVENT_MATCH_REJECTION,
    MATCH_COMPLETED: EVENT_TRANSPLANT_COMPLETION,
}


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class StatusChange:
    """One requested match status change and everything it implies."""

    match_id: int
    new_status: str
    actor: str
    at: datetime
    outcome: Optional[str] = None

    def apply(self, registry: SqlRegistry) -> Tuple[Match, LedgerEvent]:
        """
        Raises:
            NotFound: If the match, donor or recipient does not exist
            IllegalTransition: If the match cannot move to new_status, it was
                moved by another writer meanwhile, or a linked donor or
                recipient is no longer in the status the move requires
            PersistenceFailure: If any write fails; nothing is committed
        """
        match = registry.get_match(self.match_id)
        if match is None:
            raise NotFound(f"Match {self.match_id} not found")

        previous = match.status
        if not can_transition(previous, self.new_status):
            raise IllegalTransition(previous, self.new_status)

        fields = {}
        if self.new_status == MATCH_APPROVED:
            fields = {"approved_by": self.actor, "approved_at": self.at}
        elif self.new_status == MATCH_COMPLETED:
            fields = {"outcome": self.outcome}

        with registry.unit_of_work():
            updated = registry.update_match_status(
                match.id, self.new_status, expected_status=previous, **fields
            )
            if updated is None:
                raise IllegalTransition(previous, self.new_status, "match status changed concurrently")

            if self.new_status in PARTY_STATUS:
                donor_status, recipient_status = PARTY_STATUS[self.new_status]
                donor_from, recipient_from = PARTY_REQUIRED[self.new_status]
                if registry.update_donor_status(match.donor_id, donor_status, expected_status=donor_from) is None:
                    raise IllegalTransition(
                        previous, self.new_status, f"donor {match.donor_id} is no longer {donor_from}"
                    )
                if registry.update_recipient_status(
                    match.recipient_id, recipient_status, expected_status=recipient_from
                ) is None:
                    raise IllegalTransition(
                        previous, self.new_status, f"recipient {match.recipient_id} is no longer {recipient_from}"
                    )

            event = registry.insert_event(
                EVENT_FOR_STATUS[self.new_status],
                match,
                {
                    "organ_type": match.organ_type,
                    "compatibility_score": match.compatibility_score,
                    "previous_status": previous,
                    "status": self.new_status,
                    "actor": self.actor,
                },
            )
        return match, event


class MatchLifecycleManager:
    """Entry point for operator actions on matches."""

    def __init__(
        self,
        registry: SqlRegistry,
        sink=None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.sink = sink
        self.clock = clock

    def set_status(self, match_id: int, new_status: str, actor: str, outcome: Optional[str] = None) -> Match:
        """
        Move a match to new_status on behalf of actor.

        Returns:
            The updated match
        """
        if not isinstance(actor, str) or not actor.strip():
            raise InvalidInput("Status change requires an actor", ["Field 'actor' must be a non-empty string"])

        command = StatusChange(
            match_id=match_id,
            new_status=new_status,
            actor=actor,
            at=self.clock(),
            outcome=outcome,
        )
        match, event = command.apply(self.registry)

        logger.info(
            "Match status changed",
            match_id=match.id,
            status=new_status,
            actor=actor,
            tx_hash=event.tx_hash,
        )
        logger.record_transition(new_status)
        notify(self.sink, event, match)
        return match

    def approve(self, match_id: int, actor: str) -> Match:
        return self.set_status(match_id, MATCH_APPROVED, actor)

    def reject(self, match_id: int, actor: str) -> Match:
        return self.set_status(match_id, MATCH_REJECTED, actor)

    def complete(self, match_id: int, actor: str, outcome: Optional[str] = None) -> Match:
        return self.set_status(match_id, MATCH_COMPLETED, actor, outcome=outcome)
