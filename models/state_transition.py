from sqlalchemy import Column, String, Text, DateTime, Index
from datetime import datetime
from models.base import Base, JSONType, IdType


class StateTransition(Base):
    """
    Append-only history of event lifecycle transitions.

    Rows are never updated or deleted. event_id carries no foreign key so
    history outlives events removed by deduplication or admin deletes.
    """
    __tablename__ = "state_transitions"

    id = Column(IdType, primary_key=True, autoincrement=True)
    event_id = Column(IdType, nullable=False)

    previous_state = Column(String(40), nullable=True)
    new_state = Column(String(40), nullable=False)
    actor = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)
    context = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_state_transitions_event", "event_id", "created_at"),
    )
