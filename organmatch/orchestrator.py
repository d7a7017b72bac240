"""
Match Orchestrator.

Responsibilities:
- React to a newly registered donor or recipient.
- Score the opposite population that shares the organ.
- Apply the acceptance threshold and the one-match-per-pair rule.
- Persist pending matches and hand their ledger events to the sink.

Non-Responsibilities:
- No scoring rules (see scoring.py).
- No status transitions (see lifecycle.py).

Invariant:
Re-running for the same donor or recipient never creates a second match
for a pair that already has one.
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .database import Donor, LedgerEvent, Match, Recipient
from .errors import DuplicateMatch, InvalidInput, PersistenceFailure
from .ledger import EVENT_MATCH_FOUND, notify
from .logger import get_logger
from .schema import (
    DONOR_FIELDS,
    RECIPIENT_FIELDS,
    snapshot,
    validate_donor,
    validate_recipient,
)
from .scoring import DEFAULT_FULLY_WAITED_DAYS, ScoreBreakdown, score_pair
from .storage import SqlRegistry

logger = get_logger()

DEFAULT_ACCEPTANCE_THRESHOLD = 50


def persist_match(
    registry: SqlRegistry,
    donor: Donor,
    recipient: Recipient,
    breakdown: ScoreBreakdown,
) -> Tuple[Match, LedgerEvent]:
    """
    Store a pending match and its ledger event in one unit of work.

    Raises:
        DuplicateMatch: If the pair already has a match
        PersistenceFailure: On any other storage error
    """
    with registry.unit_of_work():
        match = registry.insert_match(
            donor_id=donor.id,
            recipient_id=recipient.id,
            organ_type=donor.organ_type,
            compatibility_score=breakdown.score,
            ai_match_data=breakdown.to_dict(),
        )
        event = registry.insert_event(
            EVENT_MATCH_FOUND,
            match,
            {"organ_type": donor.organ_type, "compatibility_score": breakdown.score},
        )
    return match, event


def score_candidate(donor: Donor, recipient: Recipient, now: datetime, fully_waited_days: int) -> Optional[ScoreBreakdown]:
    """
    Score one pair drawn from storage, or return None when a stored row is
    malformed. The bad pair is logged and counted so the rest can proceed.
    """
    try:
        breakdown = score_pair(donor, recipient, now=now, fully_waited_days=fully_waited_days)
    except InvalidInput as e:
        logger.warning(
            "Skipping candidate with invalid fields",
            donor_id=donor.id,
            recipient_id=recipient.id,
            errors=e.errors,
        )
        logger.record_match_skipped("invalid_candidate")
        return None
    logger.record_candidate_scored()
    return breakdown


class MatchOrchestrator:
    """Creates candidate matches whenever a donor or recipient is registered."""

    def __init__(
        self,
        registry: SqlRegistry,
        sink=None,
        acceptance_threshold: int = DEFAULT_ACCEPTANCE_THRESHOLD,
        fully_waited_days: int = DEFAULT_FULLY_WAITED_DAYS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.sink = sink
        self.acceptance_threshold = acceptance_threshold
        self.fully_waited_days = fully_waited_days
        self.clock = clock

    def on_donor_registered(self, donor: Donor) -> List[Match]:
        """
        Match a newly stored donor against waiting recipients needing the same organ.

        Returns:
            Matches created by this call (empty if every pair was skipped)

        Raises:
            InvalidInput: If the donor lacks the fields scoring needs
        """
        errors = validate_donor(snapshot(donor, DONOR_FIELDS))
        if errors:
            raise InvalidInput(f"Donor {donor.id} cannot be matched", errors)

        candidates = self.registry.find_waiting_recipients_by_organ(donor.organ_type)
        logger.info("Matching new donor", donor_id=donor.id, organ=donor.organ_type, candidates=len(candidates))
        return self._match_pairs([(donor, r) for r in candidates])

    def on_recipient_registered(self, recipient: Recipient) -> List[Match]:
        """
        Match a newly stored recipient against active donors offering the needed organ.

        Returns:
            Matches created by this call (empty if every pair was skipped)

        Raises:
            InvalidInput: If the recipient lacks the fields scoring needs
        """
        errors = validate_recipient(snapshot(recipient, RECIPIENT_FIELDS))
        if errors:
            raise InvalidInput(f"Recipient {recipient.id} cannot be matched", errors)

        candidates = self.registry.find_active_donors_by_organ(recipient.organ_needed)
        logger.info(
            "Matching new recipient",
            recipient_id=recipient.id,
            organ=recipient.organ_needed,
            candidates=len(candidates),
        )
        return self._match_pairs([(d, recipient) for d in candidates])

    def _match_pairs(self, pairs) -> List[Match]:
        now = self.clock()
        created: List[Match] = []
        for donor, recipient in pairs:
            breakdown = score_candidate(donor, recipient, now, self.fully_waited_days)
            if breakdown is None:
                continue
            if breakdown.score == 0:
                logger.record_match_skipped("incompatible")
                continue
            if breakdown.score < self.acceptance_threshold:
                logger.record_match_skipped("below_threshold")
                continue

            match = create_if_absent(self.registry, donor, recipient, breakdown, self.sink)
            if match is not None:
                created.append(match)
        return created


def create_if_absent(
    registry: SqlRegistry,
    donor: Donor,
    recipient: Recipient,
    breakdown: ScoreBreakdown,
    sink=None,
) -> Optional[Match]:
    """
    Persist a match unless the pair already has one.

    Duplicates and storage failures are logged and skipped so one bad
    candidate does not stop the others.
    """
    if registry.find_match(donor.id, recipient.id) is not None:
        logger.record_match_skipped("duplicate")
        return None

    try:
        match, event = persist_match(registry, donor, recipient, breakdown)
    except DuplicateMatch:
        logger.record_match_skipped("duplicate")
        return None
    except PersistenceFailure as e:
        logger.error(
            "Failed to store match",
            donor_id=donor.id,
            recipient_id=recipient.id,
            error=str(e),
        )
        logger.record_persistence_failure()
        return None

    logger.info(
        "Created match",
        match_id=match.id,
        donor_id=donor.id,
        recipient_id=recipient.id,
        score=breakdown.score,
    )
    logger.record_match_created()
    notify(sink, event, match)
    return match
