import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from analytics_server.lib.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsEvent(Base):
    """Append-only log of user activity events.

    Rows are never updated; engagement, activity series and top-content views
    are derived from this table and cached separately.
    """

    __tablename__ = 'analytics_events'

    id = Column(PGUUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=True)
    user_id = Column(String(255), nullable=True)
    group_id = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column('metadata', JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('ix_analytics_events_timestamp', 'timestamp'),
        Index('ix_analytics_events_type', 'type'),
        Index('ix_analytics_events_group_id', 'group_id'),
        Index('ix_analytics_events_user_id', 'user_id'),
        Index('ix_analytics_events_entity_id', 'entity_id'),
    )

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'type': self.type,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'group_id': self.group_id,
            'metadata': self.event_metadata or {},
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }
