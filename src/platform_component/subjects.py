"""
NATS subject schema for platform components.

Heartbeat: $PC.heartbeat.<type>
Logs:      $PC.<type>.Logs
"""

from __future__ import annotations

import re
from dataclasses import dataclass

HEARTBEAT_ROOT = "$PC.heartbeat"
LOGS_SUBJECT = "$PC.{}.Logs"

_TYPE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class SubjectSchemaError(ValueError):
    """Raised when a component type cannot be used as a subject token."""


def validate_component_type(component_type: str) -> str:
    if not isinstance(component_type, str) or not component_type:
        raise SubjectSchemaError("component type must be a non-empty string")
    if not _TYPE_RE.fullmatch(component_type):
        raise SubjectSchemaError(
            f"component type '{component_type}' is invalid; allowed: [A-Za-z0-9_-]+"
        )
    return component_type


@dataclass(frozen=True, slots=True)
class SubjectSchema:
    """Subjects for a single component type."""

    component_type: str

    def __post_init__(self) -> None:
        validate_component_type(self.component_type)

    def heartbeat(self) -> str:
        return f"{HEARTBEAT_ROOT}.{self.component_type}"

    def logs(self) -> str:
        return LOGS_SUBJECT.format(self.component_type)
