"""Timeline event store models.

Classes:
    Era: Named life period that groups events.
    Event: A single remembered event with its free-text content.
    Tag / Person / Location: Normalised entity tables referenced by events.
    EventTag / EventPerson / EventLocation: Ordered many-to-many links; position 0 is the primary entity.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

EVENT_CATEGORIES = (
    "milestone",
    "work",
    "education",
    "relationship",
    "travel",
    "achievement",
    "challenge",
    "era",
    "other",
)


def _new_id() -> str:
    return str(uuid4())


class Era(SQLModel, table=True):
    __tablename__ = "eras"

    era_id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    start_date: date = Field(index=True)
    end_date: Optional[date] = None
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Event(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=_new_id, primary_key=True)
    title: str
    start_date: date = Field(index=True)
    end_date: Optional[date] = None
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    category: str = Field(default="other", index=True)
    era_id: Optional[str] = Field(default=None, foreign_key="eras.era_id", index=True)
    raw_transcript: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("key", name="uq_tag_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    key: str = Field(index=True)


class Person(SQLModel, table=True):
    __tablename__ = "people"
    __table_args__ = (UniqueConstraint("key", name="uq_person_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    key: str = Field(index=True)


class Location(SQLModel, table=True):
    __tablename__ = "locations"
    __table_args__ = (UniqueConstraint("key", name="uq_location_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    key: str = Field(index=True)


class EventTag(SQLModel, table=True):
    __tablename__ = "event_tags"

    event_id: str = Field(foreign_key="events.event_id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True)
    position: int = 0


class EventPerson(SQLModel, table=True):
    __tablename__ = "event_people"

    event_id: str = Field(foreign_key="events.event_id", primary_key=True)
    person_id: int = Field(foreign_key="people.id", primary_key=True)
    position: int = 0


class EventLocation(SQLModel, table=True):
    __tablename__ = "event_locations"

    event_id: str = Field(foreign_key="events.event_id", primary_key=True)
    location_id: int = Field(foreign_key="locations.id", primary_key=True)
    position: int = 0
