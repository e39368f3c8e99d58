"""
CRM-side types: entity kinds, fetched entities and row match outcomes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class TargetType(str, Enum):
    """What the user asked to search."""
    CONTACTS = "contacts"
    COMPANIES = "companies"
    BOTH = "both"


class EntityKind(str, Enum):
    """Concrete CRM record category."""
    CONTACT = "contact"
    COMPANY = "company"

    @property
    def list_method(self) -> str:
        return f"crm.{self.value}.list"

    @property
    def update_method(self) -> str:
        return f"crm.{self.value}.update"


def kinds_for_target(target_type: TargetType) -> list[EntityKind]:
    """Entity kinds searched for a target type, in search order."""
    if target_type == TargetType.CONTACTS:
        return [EntityKind.CONTACT]
    if target_type == TargetType.COMPANIES:
        return [EntityKind.COMPANY]
    return [EntityKind.CONTACT, EntityKind.COMPANY]


@dataclass
class CrmEntity:
    """A record returned by a CRM list call."""
    id: str
    kind: EntityKind
    fields: dict[str, Any] = field(default_factory=dict)

    def value_of(self, name: str) -> str:
        """Field value as text, empty string when absent."""
        value = self.fields.get(name)
        if value is None:
            return ""
        return str(value)


class MatchType(str, Enum):
    """Terminal classification of one input row."""
    FOUND = "found"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"


@dataclass
class MatchOutcome:
    """
    Result of matching one row.

    search_key describes the key column/value that produced the match, or
    every key column tried when nothing matched.
    """
    row_index: int
    match_type: MatchType
    search_key: str
    entity: Optional[CrmEntity] = None
    candidates: int = 0

    @property
    def matched(self) -> bool:
        return self.entity is not None
