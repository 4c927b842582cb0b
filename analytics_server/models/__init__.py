"""Models package for database entities and Pydantic models."""

from analytics_server.models.analytics_event import AnalyticsEvent
from analytics_server.models.content import ForumGroup, ForumPost, User
from analytics_server.models.event_schemas import (
    AnalyticsEventInput,
    AnalyticsEventValidationError,
    EventType,
    validate_event,
)

__all__ = [
    'AnalyticsEvent',
    'AnalyticsEventInput',
    'AnalyticsEventValidationError',
    'EventType',
    'ForumGroup',
    'ForumPost',
    'User',
    'validate_event',
]
