"""Business entities that can trigger chains, and the registry resolving them."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from .errors import NotFoundError
from .persistence.models import EntityRef, utcnow

logger = logging.getLogger(__name__)

AUDIT_FIELDS = frozenset({"created_at", "updated_at", "deleted_at"})


class BaseEntity(BaseModel):
    """Anything whose status changes can trigger a chain."""

    entity_type: ClassVar[str] = "entity"

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    # exposed as ``team_id`` in snapshots
    team: Optional[str] = Field(default=None, alias="team_id")
    status: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def team_id(self) -> Optional[str]:
        return self.team

    def key(self) -> str:
        return self.id

    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, key=self.key())

    def snapshot(self) -> Dict[str, Any]:
        """Attributes without audit timestamps, JSON-safe."""
        return self.model_dump(mode="json", by_alias=True, exclude=set(AUDIT_FIELDS))

    def budget(self) -> float:
        return float(getattr(self, "budget_cost", None) or 0)

    def has_tags(self, tags: List[str]) -> bool:
        return set(tags) <= set(self.tags)

    def field_value(self, field: str) -> Any:
        return getattr(self, field, None)


class WorkOrder(BaseEntity):
    entity_type: ClassVar[str] = "work_order"

    project_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[date] = None
    estimated_hours: Optional[float] = None
    budget_cost: Optional[float] = None
    required_skills: List[str] = Field(default_factory=list)
    assigned_to_id: Optional[str] = None
    created_by_id: Optional[str] = None


class Task(BaseEntity):
    entity_type: ClassVar[str] = "task"

    work_order_id: Optional[str] = None
    project_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    estimated_hours: Optional[float] = None
    assigned_to_id: Optional[str] = None
    due_date: Optional[date] = None


class Deliverable(BaseEntity):
    entity_type: ClassVar[str] = "deliverable"

    work_order_id: Optional[str] = None
    project_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    version: Optional[str] = None
    file_url: Optional[str] = None


class Note(BaseEntity):
    entity_type: ClassVar[str] = "note"

    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    content: str = ""
    author: Optional[str] = None


class EntityRegistry:
    """Explicit map of entity type names to implementations plus a local store."""

    def __init__(self, types: Optional[List[Type[BaseEntity]]] = None) -> None:
        self._types: Dict[str, Type[BaseEntity]] = {}
        self._records: Dict[tuple[str, str], BaseEntity] = {}
        for entity_cls in types or [WorkOrder, Task, Deliverable, Note]:
            self.register(entity_cls)

    def register(self, entity_cls: Type[BaseEntity]) -> None:
        self._types[entity_cls.entity_type] = entity_cls

    def entity_class(self, entity_type: str) -> Type[BaseEntity]:
        try:
            return self._types[entity_type]
        except KeyError:
            raise NotFoundError(
                f"Unknown entity type '{entity_type}'", entity_type=entity_type
            ) from None

    def known_types(self) -> List[str]:
        return sorted(self._types)

    def save(self, entity: BaseEntity) -> BaseEntity:
        self.entity_class(entity.entity_type)
        entity.updated_at = utcnow()
        self._records[(entity.entity_type, entity.key())] = entity
        return entity

    def get(self, entity_type: str, key: str) -> Optional[BaseEntity]:
        return self._records.get((entity_type, key))

    def resolve(self, ref: EntityRef) -> BaseEntity:
        entity = self.get(ref.entity_type, ref.key)
        if entity is None:
            raise NotFoundError(
                f"{ref.entity_type} {ref.key} not found",
                entity_type=ref.entity_type,
                key=ref.key,
            )
        return entity

    def load(self, entity_type: str, data: Dict[str, Any]) -> BaseEntity:
        """Rebuild an entity from a snapshot, preferring the stored record."""
        entity_cls = self.entity_class(entity_type)
        stored = self.get(entity_type, str(data.get("id", "")))
        return stored or entity_cls.model_validate(data)

    def merge_metadata(self, ref: EntityRef, **metadata: Any) -> Optional[BaseEntity]:
        entity = self.get(ref.entity_type, ref.key)
        if entity is None:
            logger.warning(
                f"Cannot record metadata on missing {ref.entity_type} {ref.key}"
            )
            return None
        entity.metadata = {**entity.metadata, **metadata}
        entity.updated_at = utcnow()
        return entity

    def list_entities(self, entity_type: str, team_id: Optional[str] = None) -> List[BaseEntity]:
        return [
            entity
            for (kind, _), entity in self._records.items()
            if kind == entity_type and (team_id is None or entity.team_id() == team_id)
        ]
