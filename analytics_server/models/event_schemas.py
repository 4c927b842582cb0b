"""Pydantic schemas for analytics event ingestion.

Each event type carries its own metadata schema. Events are validated as a
discriminated union on `type`, so metadata keys that do not belong to the
event type are rejected at ingestion instead of drifting into the log.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Analytics event types."""

    PAGE_VIEW = 'PAGE_VIEW'
    POST_VIEW = 'POST_VIEW'
    POST_CREATE = 'POST_CREATE'
    POST_LIKE = 'POST_LIKE'
    COMMENT_CREATE = 'COMMENT_CREATE'
    COMMENT_LIKE = 'COMMENT_LIKE'
    GROUP_JOIN = 'GROUP_JOIN'
    GROUP_LEAVE = 'GROUP_LEAVE'
    SEARCH = 'SEARCH'
    RESOURCE_VIEW = 'RESOURCE_VIEW'
    RESOURCE_DOWNLOAD = 'RESOURCE_DOWNLOAD'


class AnalyticsEventValidationError(ValueError):
    """Raised when an event payload does not match its type's schema."""

    def __init__(self, errors: list[dict[str, Any]]):
        self.errors = errors
        super().__init__(f'Invalid analytics event: {errors}')


class _Metadata(BaseModel):
    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)


class PageViewMetadata(_Metadata):
    path: Optional[str] = Field(None, max_length=2048)
    referrer: Optional[str] = Field(None, max_length=2048)


class PostViewMetadata(_Metadata):
    source: Optional[str] = Field(None, description='Where the post was opened from (feed, search, link)')


class PostCreateMetadata(_Metadata):
    title: Optional[str] = Field(None, max_length=500)
    has_media: bool = False


class LikeMetadata(_Metadata):
    reaction: str = 'like'


class CommentCreateMetadata(_Metadata):
    post_id: Optional[str] = None
    parent_id: Optional[str] = None


class GroupMembershipMetadata(_Metadata):
    role: Optional[str] = None
    invited_by: Optional[str] = None


class SearchMetadata(_Metadata):
    query: str = Field(..., min_length=1, max_length=500)
    result_count: Optional[int] = Field(None, ge=0)


class ResourceMetadata(_Metadata):
    resource_type: Optional[str] = None
    file_name: Optional[str] = None


class _BaseEvent(BaseModel):
    """Fields shared by every event type."""

    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)

    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: Optional[str] = Field(None, max_length=255)
    user_id: Optional[str] = Field(None, max_length=255)
    group_id: Optional[str] = Field(None, max_length=255)
    timestamp: Optional[datetime] = Field(None, description='Defaults to the time of ingestion')


class PageViewEvent(_BaseEvent):
    type: Literal['PAGE_VIEW']
    metadata: PageViewMetadata = Field(default_factory=PageViewMetadata)


class PostViewEvent(_BaseEvent):
    type: Literal['POST_VIEW']
    metadata: PostViewMetadata = Field(default_factory=PostViewMetadata)


class PostCreateEvent(_BaseEvent):
    type: Literal['POST_CREATE']
    metadata: PostCreateMetadata = Field(default_factory=PostCreateMetadata)


class LikeEvent(_BaseEvent):
    type: Literal['POST_LIKE', 'COMMENT_LIKE']
    metadata: LikeMetadata = Field(default_factory=LikeMetadata)


class CommentCreateEvent(_BaseEvent):
    type: Literal['COMMENT_CREATE']
    metadata: CommentCreateMetadata = Field(default_factory=CommentCreateMetadata)


class GroupMembershipEvent(_BaseEvent):
    type: Literal['GROUP_JOIN', 'GROUP_LEAVE']
    metadata: GroupMembershipMetadata = Field(default_factory=GroupMembershipMetadata)


class SearchEvent(_BaseEvent):
    type: Literal['SEARCH']
    metadata: SearchMetadata


class ResourceEvent(_BaseEvent):
    type: Literal['RESOURCE_VIEW', 'RESOURCE_DOWNLOAD']
    metadata: ResourceMetadata = Field(default_factory=ResourceMetadata)


AnalyticsEventInput = Annotated[
    Union[
        PageViewEvent,
        PostViewEvent,
        PostCreateEvent,
        LikeEvent,
        CommentCreateEvent,
        GroupMembershipEvent,
        SearchEvent,
        ResourceEvent,
    ],
    Field(discriminator='type'),
]

_event_adapter = TypeAdapter(AnalyticsEventInput)


def validate_event(data: Any) -> _BaseEvent:
    """Validate a raw payload (snake_case or camelCase keys) into a typed event.

    Already-validated event models are returned unchanged.

    Raises:
        AnalyticsEventValidationError: If the payload does not match its type's schema
    """
    if isinstance(data, _BaseEvent):
        return data
    try:
        return _event_adapter.validate_python(data)
    except ValidationError as e:
        raise AnalyticsEventValidationError(e.errors(include_url=False)) from e


def event_to_record(event: _BaseEvent) -> dict[str, Any]:
    """Flatten a validated event into the column layout of the event store."""
    return {
        'type': event.type,
        'entity_type': event.entity_type,
        'entity_id': event.entity_id,
        'user_id': event.user_id,
        'group_id': event.group_id,
        'metadata': event.metadata.model_dump(exclude_none=True),
        'timestamp': event.timestamp,
    }
