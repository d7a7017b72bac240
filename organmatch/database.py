"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for donors, recipients, matches and the
ledger of match events.
"""

from datetime import datetime
from pathlib import Path
from sqlalchemy import (
    create_engine,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

Base = declarative_base()

DONOR_ACTIVE = "active"
DONOR_MATCHED = "matched"
DONOR_DONATED = "donated"
DONOR_WITHDRAWN = "withdrawn"

RECIPIENT_WAITING = "waiting"
RECIPIENT_MATCHED = "matched"
RECIPIENT_RECEIVED = "received"

MATCH_PENDING = "pending"
MATCH_APPROVED = "approved"
MATCH_REJECTED = "rejected"
MATCH_COMPLETED = "completed"


class Donor(Base):
    """Registered donor offering one organ."""

    __tablename__ = "donors"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    blood_type = Column(String(3), nullable=False)
    organ_type = Column(String, nullable=False, index=True)
    location = Column(String, nullable=False)
    age = Column(Integer)
    date_of_birth = Column(Date)
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default=DONOR_ACTIVE)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Donor {self.id} {self.blood_type} {self.organ_type}>"


class Recipient(Base):
    """Registered recipient waiting for one organ."""

    __tablename__ = "recipients"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    blood_type = Column(String(3), nullable=False)
    organ_needed = Column(String, nullable=False, index=True)
    location = Column(String, nullable=False)
    age = Column(Integer)
    date_of_birth = Column(Date)
    urgency_level = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default=RECIPIENT_WAITING)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"<Recipient {self.id} {self.blood_type} {self.organ_needed}>"


class Match(Base):
    """Scored link between one donor and one recipient. At most one per pair."""

    __tablename__ = "matches"
    __table_args__ = (UniqueConstraint("donor_id", "recipient_id", name="uq_match_pair"),)

    id = Column(Integer, primary_key=True)
    donor_id = Column(Integer, ForeignKey("donors.id"), nullable=False)
    recipient_id = Column(Integer, ForeignKey("recipients.id"), nullable=False)
    organ_type = Column(String, nullable=False)
    compatibility_score = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=MATCH_PENDING)
    ai_match_data = Column(JSON)
    approved_by = Column(String)
    approved_at = Column(DateTime)
    outcome = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.now)

    donor = relationship("Donor")
    recipient = relationship("Recipient")

    def to_dict(self):
        return {
            "id": self.id,
            "donor_id": self.donor_id,
            "recipient_id": self.recipient_id,
            "organ_type": self.organ_type,
            "compatibility_score": self.compatibility_score,
            "status": self.status,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "outcome": self.outcome,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class LedgerEvent(Base):
    """Audit record of a match creation or status change."""

    __tablename__ = "ledger_events"

    id = Column(Integer, primary_key=True)
    tx_hash = Column(String, nullable=False, unique=True)
    type = Column(String, nullable=False)  # ai_match_found, match_approval, match_rejection, transplant_completion
    match_id = Column(Integer, ForeignKey("matches.id"))
    donor_id = Column(Integer, ForeignKey("donors.id"))
    recipient_id = Column(Integer, ForeignKey("recipients.id"))
    data = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class MatchStatistic(Base):
    """Latest published AI match rate. One row, replaced by each batch that creates matches."""

    __tablename__ = "match_statistics"

    id = Column(Integer, primary_key=True)
    ai_match_rate = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)


def _engine(db_path: Path):
    return create_engine(f"sqlite:///{db_path}")


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(_engine(db_path))


def get_session(db_path: Path):
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    Session = sessionmaker(bind=_engine(db_path))
    return Session()
