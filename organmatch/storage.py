"""
Registry: persistence for donors, recipients, matches and ledger events.

Responsibilities:
- Query and write records through a SQLAlchemy session.
- Group writes into a unit of work that commits or rolls back as a whole.
- Translate storage errors into DuplicateMatch / PersistenceFailure.

Non-Responsibilities:
- No scoring.
- No threshold or lifecycle rules.

Invariant:
A (donor_id, recipient_id) pair has at most one match row; the unique
constraint on the matches table enforces it under concurrent writers.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import (
    DONOR_ACTIVE,
    MATCH_PENDING,
    RECIPIENT_WAITING,
    Donor,
    LedgerEvent,
    Match,
    MatchStatistic,
    Recipient,
)
from .errors import DuplicateMatch, MatchingError, NotFound, PersistenceFailure


def _is_pair_violation(error: IntegrityError) -> bool:
    message = str(error.orig)
    return "uq_match_pair" in message or "matches.donor_id, matches.recipient_id" in message


STATISTIC_ROW_ID = 1


def new_tx_hash() -> str:
    return f"0x{uuid.uuid4().hex}"


class SqlRegistry:
    """Registry backed by a SQLAlchemy session."""

    def __init__(self, session):
        self.session = session
        self._depth = 0

    @contextmanager
    def unit_of_work(self):
        """
        Run a group of writes as one transaction.

        Nested calls join the outermost unit. On any error the whole unit is
        rolled back; storage errors surface as PersistenceFailure.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self
            self.session.commit()
        except MatchingError:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            raise PersistenceFailure(f"Storage error: {e}") from e
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth = 0

    # Donors / recipients

    def add_donor(self, **fields) -> Donor:
        donor = Donor(**fields)
        with self.unit_of_work():
            self.session.add(donor)
            self.session.flush()
        return donor

    def add_recipient(self, **fields) -> Recipient:
        recipient = Recipient(**fields)
        with self.unit_of_work():
            self.session.add(recipient)
            self.session.flush()
        return recipient

    def get_donor(self, donor_id: int) -> Optional[Donor]:
        return self.session.get(Donor, donor_id)

    def get_recipient(self, recipient_id: int) -> Optional[Recipient]:
        return self.session.get(Recipient, recipient_id)

    def find_active_donors_by_organ(self, organ: str) -> List[Donor]:
        return (
            self.session.query(Donor)
            .filter_by(organ_type=organ, status=DONOR_ACTIVE, is_active=True)
            .order_by(Donor.id)
            .all()
        )

    def find_waiting_recipients_by_organ(self, organ: str) -> List[Recipient]:
        return (
            self.session.query(Recipient)
            .filter_by(organ_needed=organ, status=RECIPIENT_WAITING, is_active=True)
            .order_by(Recipient.id)
            .all()
        )

    def find_all_active_donors(self) -> List[Donor]:
        return (
            self.session.query(Donor)
            .filter_by(status=DONOR_ACTIVE, is_active=True)
            .order_by(Donor.id)
            .all()
        )

    def find_all_waiting_recipients(self) -> List[Recipient]:
        return (
            self.session.query(Recipient)
            .filter_by(status=RECIPIENT_WAITING, is_active=True)
            .order_by(Recipient.id)
            .all()
        )

    def _set_status(self, model, row_id: int, values: Dict[str, Any], expected_status: Optional[str]) -> bool:
        query = self.session.query(model).filter(model.id == row_id)
        if expected_status is not None:
            query = query.filter(model.status == expected_status)
        return query.update(values, synchronize_session="fetch") > 0

    def update_donor_status(self, donor_id: int, status: str, expected_status: Optional[str] = None) -> Optional[Donor]:
        """
        Set a donor's status.

        With expected_status the row only changes if it still holds that
        status in the database; None is returned when it does not.
        """
        donor = self.get_donor(donor_id)
        if donor is None:
            raise NotFound(f"Donor {donor_id} not found")
        with self.unit_of_work():
            if not self._set_status(Donor, donor_id, {"status": status}, expected_status):
                return None
        return donor

    def update_recipient_status(
        self, recipient_id: int, status: str, expected_status: Optional[str] = None
    ) -> Optional[Recipient]:
        """Set a recipient's status; see update_donor_status for expected_status."""
        recipient = self.get_recipient(recipient_id)
        if recipient is None:
            raise NotFound(f"Recipient {recipient_id} not found")
        with self.unit_of_work():
            if not self._set_status(Recipient, recipient_id, {"status": status}, expected_status):
                return None
        return recipient

    # Matches

    def get_match(self, match_id: int) -> Optional[Match]:
        return self.session.get(Match, match_id)

    def find_match(self, donor_id: int, recipient_id: int) -> Optional[Match]:
        return (
            self.session.query(Match)
            .filter_by(donor_id=donor_id, recipient_id=recipient_id)
            .first()
        )

    def insert_match(
        self,
        donor_id: int,
        recipient_id: int,
        organ_type: str,
        compatibility_score: int,
        ai_match_data: Optional[Dict[str, Any]] = None,
    ) -> Match:
        """
        Insert a pending match.

        Raises:
            DuplicateMatch: If the pair already has a match
            PersistenceFailure: On any other storage error
        """
        match = Match(
            donor_id=donor_id,
            recipient_id=recipient_id,
            organ_type=organ_type,
            compatibility_score=compatibility_score,
            status=MATCH_PENDING,
            ai_match_data=ai_match_data,
            created_at=datetime.now(),
        )
        with self.unit_of_work():
            self.session.add(match)
            try:
                self.session.flush()
            except IntegrityError as e:
                if _is_pair_violation(e):
                    raise DuplicateMatch(donor_id, recipient_id) from e
                raise
        return match

    def update_match_status(
        self,
        match_id: int,
        status: str,
        approved_by: Optional[str] = None,
        approved_at: Optional[datetime] = None,
        outcome: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> Optional[Match]:
        """
        Set a match's status and any approval / outcome fields given.

        With expected_status this is a compare-and-set: the row only changes
        if it still holds that status in the database, and None is returned
        when another writer got there first.
        """
        match = self.get_match(match_id)
        if match is None:
            raise NotFound(f"Match {match_id} not found")

        values: Dict[str, Any] = {"status": status}
        if approved_by is not None:
            values["approved_by"] = approved_by
        if approved_at is not None:
            values["approved_at"] = approved_at
        if outcome is not None:
            values["outcome"] = outcome

        with self.unit_of_work():
            if not self._set_status(Match, match_id, values, expected_status):
                return None
        return match

    def list_matches(self, status: Optional[str] = None) -> List[Match]:
        """All matches, newest first; filtered by status they are ordered best score first."""
        query = self.session.query(Match)
        if status is not None:
            return query.filter_by(status=status).order_by(
                Match.compatibility_score.desc(), Match.id
            ).all()
        return query.order_by(Match.created_at.desc(), Match.id.desc()).all()

    # Ledger

    def insert_event(self, event_type: str, match: Match, data: Optional[Dict[str, Any]] = None) -> LedgerEvent:
        event = LedgerEvent(
            tx_hash=new_tx_hash(),
            type=event_type,
            match_id=match.id,
            donor_id=match.donor_id,
            recipient_id=match.recipient_id,
            data=data or {},
            created_at=datetime.now(),
        )
        with self.unit_of_work():
            self.session.add(event)
            self.session.flush()
        return event

    def list_events(self, match_id: Optional[int] = None) -> List[LedgerEvent]:
        query = self.session.query(LedgerEvent)
        if match_id is not None:
            query = query.filter_by(match_id=match_id)
        return query.order_by(LedgerEvent.id).all()

    # Aggregates

    def count_donors(self) -> int:
        return self.session.query(Donor).count()

    def count_recipients(self) -> int:
        return self.session.query(Recipient).count()

    def count_matches(self, status: Optional[str] = None) -> int:
        query = self.session.query(Match)
        if status is not None:
            query = query.filter_by(status=status)
        return query.count()

    def average_score(self) -> float:
        value = self.session.query(func.avg(Match.compatibility_score)).scalar()
        return round(float(value), 1) if value is not None else 0.0

    def organ_distribution(self) -> Dict[str, int]:
        rows = (
            self.session.query(Donor.organ_type, func.count(Donor.id))
            .group_by(Donor.organ_type)
            .all()
        )
        return {organ: count for organ, count in rows}

    def regional_distribution(self) -> Dict[str, int]:
        regions: Dict[str, int] = {}
        for model in (Donor, Recipient):
            rows = (
                self.session.query(model.location, func.count(model.id))
                .group_by(model.location)
                .all()
            )
            for location, count in rows:
                regions[location] = regions.get(location, 0) + count
        return regions

    def save_ai_match_rate(self, rate: float, at: datetime) -> None:
        with self.unit_of_work():
            self.session.merge(MatchStatistic(id=STATISTIC_ROW_ID, ai_match_rate=rate, updated_at=at))
            self.session.flush()

    def latest_ai_match_rate(self) -> Optional[float]:
        row = self.session.get(MatchStatistic, STATISTIC_ROW_ID)
        return row.ai_match_rate if row is not None else None
