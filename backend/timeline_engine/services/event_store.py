"""Event store boundary consumed by the retrieval engine.

Classes:
    EventRecord: Immutable view of an event with typed tag/person/location collections.
    EraRecord: Immutable view of an era.
    EventStore: Protocol describing the read operations the engine depends on.
    SQLEventStore: SQLModel-backed implementation that also offers write helpers.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional, Protocol, Sequence

from sqlalchemy import delete
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from timeline_engine.core.errors import NotFound, ValidationError
from timeline_engine.models import (
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
from timeline_engine.utils.text import build_event_text, normalise_entity_name


@dataclass(slots=True, frozen=True)
class EventRecord:
    event_id: str
    title: str
    start_date: date
    category: str = "other"
    end_date: Optional[date] = None
    description: Optional[str] = None
    era_id: Optional[str] = None
    raw_transcript: Optional[str] = None
    tags: tuple[str, ...] = ()
    people: tuple[str, ...] = ()
    locations: tuple[str, ...] = ()
    tag_keys: frozenset[str] = field(default=frozenset(), compare=False)
    person_keys: frozenset[str] = field(default=frozenset(), compare=False)
    location_keys: frozenset[str] = field(default=frozenset(), compare=False)

    @classmethod
    def build(
        cls,
        *,
        event_id: str,
        title: str,
        start_date: date,
        category: str = "other",
        tags: Iterable[str] = (),
        people: Iterable[str] = (),
        locations: Iterable[str] = (),
        **extra,
    ) -> "EventRecord":
        tag_names = _dedupe_names(tags)
        person_names = _dedupe_names(people)
        location_names = _dedupe_names(locations)
        return cls(
            event_id=event_id,
            title=title,
            start_date=start_date,
            category=category,
            tags=tag_names,
            people=person_names,
            locations=location_names,
            tag_keys=frozenset(normalise_entity_name(name)[1] for name in tag_names),
            person_keys=frozenset(normalise_entity_name(name)[1] for name in person_names),
            location_keys=frozenset(normalise_entity_name(name)[1] for name in location_names),
            **extra,
        )

    @property
    def primary_person(self) -> Optional[str]:
        return normalise_entity_name(self.people[0])[1] if self.people else None

    @property
    def primary_location(self) -> Optional[str]:
        return normalise_entity_name(self.locations[0])[1] if self.locations else None

    def embedding_text(self, max_chars: int | None = None) -> str:
        return build_event_text((self.title, self.description, self.raw_transcript), max_chars=max_chars)


@dataclass(slots=True, frozen=True)
class EraRecord:
    era_id: str
    name: str
    start_date: date
    end_date: Optional[date] = None


class EventStore(Protocol):
    async def get_event_by_id(self, event_id: str) -> EventRecord: ...

    async def get_event_tags(self, event_id: str) -> list[str]: ...

    async def list_events(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[EventRecord]: ...

    async def list_eras(self) -> list[EraRecord]: ...


def _dedupe_names(names: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in names:
        if raw is None:
            continue
        display, key = normalise_entity_name(str(raw))
        if not key or key in seen:
            continue
        seen.add(key)
        ordered.append(display)
    return tuple(ordered)


class SQLEventStore:
    """Event store over the ``events`` table and its entity link tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_event_by_id(self, event_id: str) -> EventRecord:
        event = await self._session.get(Event, event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        records = await self._hydrate([event])
        return records[0]

    async def get_event_tags(self, event_id: str) -> list[str]:
        record = await self.get_event_by_id(event_id)
        return list(record.tags)

    async def list_events(
        self, start_date: Optional[date] = None, end_date: Optional[date] = None
    ) -> list[EventRecord]:
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        statement = select(Event)
        if start_date is not None:
            statement = statement.where(Event.start_date >= start_date)
        if end_date is not None:
            statement = statement.where(Event.start_date <= end_date)
        statement = statement.order_by(Event.start_date, Event.event_id)
        events = (await self._session.exec(statement)).all()
        return await self._hydrate(list(events))

    async def list_eras(self) -> list[EraRecord]:
        eras = (await self._session.exec(select(Era).order_by(Era.start_date, Era.era_id))).all()
        return [
            EraRecord(era_id=era.era_id, name=era.name, start_date=era.start_date, end_date=era.end_date)
            for era in eras
        ]

    async def add_era(
        self,
        *,
        name: str,
        start_date: date,
        end_date: Optional[date] = None,
        era_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> EraRecord:
        if end_date is not None and end_date < start_date:
            raise ValidationError("Era end_date must not precede start_date")
        era = Era(name=name.strip(), start_date=start_date, end_date=end_date, description=description)
        if era_id:
            era.era_id = era_id
        self._session.add(era)
        await self._session.commit()
        return EraRecord(era_id=era.era_id, name=era.name, start_date=era.start_date, end_date=era.end_date)

    async def add_event(
        self,
        *,
        title: str,
        start_date: date,
        category: str = "other",
        description: Optional[str] = None,
        end_date: Optional[date] = None,
        era_id: Optional[str] = None,
        raw_transcript: Optional[str] = None,
        tags: Sequence[str] = (),
        people: Sequence[str] = (),
        locations: Sequence[str] = (),
        event_id: Optional[str] = None,
    ) -> EventRecord:
        category_key = (category or "other").strip().lower()
        if category_key not in EVENT_CATEGORIES:
            raise ValidationError(f"Unknown event category '{category}'")
        if not title or not title.strip():
            raise ValidationError("Event title must not be empty")
        if end_date is not None and end_date < start_date:
            raise ValidationError("Event end_date must not precede start_date")

        event = Event(
            title=title.strip(),
            start_date=start_date,
            end_date=end_date,
            description=description,
            category=category_key,
            era_id=era_id,
            raw_transcript=raw_transcript,
        )
        if event_id:
            event.event_id = event_id
        self._session.add(event)
        await self._session.flush()
        await self._link_entities(event.event_id, tags=tags, people=people, locations=locations)
        await self._session.commit()
        return await self.get_event_by_id(event.event_id)

    async def update_event_text(
        self,
        event_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        raw_transcript: Optional[str] = None,
    ) -> EventRecord:
        event = await self._session.get(Event, event_id)
        if event is None:
            raise NotFound(f"Event {event_id} not found")
        if title is not None:
            event.title = title.strip()
        if description is not None:
            event.description = description
        if raw_transcript is not None:
            event.raw_transcript = raw_transcript
        event.updated_at = datetime.utcnow()
        self._session.add(event)
        await self._session.commit()
        return await self.get_event_by_id(event_id)

    async def set_event_tags(self, event_id: str, tags: Sequence[str]) -> EventRecord:
        if await self._session.get(Event, event_id) is None:
            raise NotFound(f"Event {event_id} not found")
        await self._session.execute(delete(EventTag).where(EventTag.event_id == event_id))
        await self._link_entities(event_id, tags=tags)
        await self._session.commit()
        return await self.get_event_by_id(event_id)

    async def _link_entities(
        self,
        event_id: str,
        *,
        tags: Sequence[str] = (),
        people: Sequence[str] = (),
        locations: Sequence[str] = (),
    ) -> None:
        for position, name in enumerate(_dedupe_names(tags)):
            tag = await self._get_or_create(Tag, name)
            self._session.add(EventTag(event_id=event_id, tag_id=tag.id, position=position))
        for position, name in enumerate(_dedupe_names(people)):
            person = await self._get_or_create(Person, name)
            self._session.add(EventPerson(event_id=event_id, person_id=person.id, position=position))
        for position, name in enumerate(_dedupe_names(locations)):
            location = await self._get_or_create(Location, name)
            self._session.add(EventLocation(event_id=event_id, location_id=location.id, position=position))
        await self._session.flush()

    async def _get_or_create(self, model, name: str):
        display, key = normalise_entity_name(name)
        existing = (await self._session.exec(select(model).where(model.key == key))).first()
        if existing is not None:
            return existing
        entity = model(name=display, key=key)
        self._session.add(entity)
        await self._session.flush()
        return entity

    async def _hydrate(self, events: list[Event]) -> list[EventRecord]:
        if not events:
            return []
        ids = [event.event_id for event in events]

        tags_by_event: dict[str, list[str]] = defaultdict(list)
        tag_rows = await self._session.exec(
            select(EventTag.event_id, Tag.name)
            .join(Tag, Tag.id == EventTag.tag_id)
            .where(EventTag.event_id.in_(ids))
            .order_by(EventTag.event_id, EventTag.position)
        )
        for event_id, name in tag_rows.all():
            tags_by_event[event_id].append(name)

        people_by_event: dict[str, list[str]] = defaultdict(list)
        person_rows = await self._session.exec(
            select(EventPerson.event_id, Person.name)
            .join(Person, Person.id == EventPerson.person_id)
            .where(EventPerson.event_id.in_(ids))
            .order_by(EventPerson.event_id, EventPerson.position)
        )
        for event_id, name in person_rows.all():
            people_by_event[event_id].append(name)

        locations_by_event: dict[str, list[str]] = defaultdict(list)
        location_rows = await self._session.exec(
            select(EventLocation.event_id, Location.name)
            .join(Location, Location.id == EventLocation.location_id)
            .where(EventLocation.event_id.in_(ids))
            .order_by(EventLocation.event_id, EventLocation.position)
        )
        for event_id, name in location_rows.all():
            locations_by_event[event_id].append(name)

        return [
            EventRecord.build(
                event_id=event.event_id,
                title=event.title,
                start_date=event.start_date,
                category=event.category,
                end_date=event.end_date,
                description=event.description,
                era_id=event.era_id,
                raw_transcript=event.raw_transcript,
                tags=tags_by_event.get(event.event_id, ()),
                people=people_by_event.get(event.event_id, ()),
                locations=locations_by_event.get(event.event_id, ()),
            )
            for event in events
        ]
