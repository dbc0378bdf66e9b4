"""Convenience exports for ORM models.

Surface the SQLModel tables so calling code and ``init_db`` can import them from a single module.
"""

from .event import (
    EVENT_CATEGORIES,
    Era,
    Event,
    EventLocation,
    EventPerson,
    EventTag,
    Location,
    Person,
    Tag,
)
from .embedding import EventEmbedding
from .cross_reference import RELATIONSHIP_TYPES, CrossReference

__all__ = [
    "EVENT_CATEGORIES",
    "RELATIONSHIP_TYPES",
    "Era",
    "Event",
    "EventTag",
    "EventPerson",
    "EventLocation",
    "Tag",
    "Person",
    "Location",
    "EventEmbedding",
    "CrossReference",
]
