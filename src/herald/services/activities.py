"""Typed view over activity payloads.

Payloads stay plain JSON mappings on the wire and in storage. Dispatch code
works on the closed set of dataclasses below; anything else becomes
``Unknown`` so that new kinds are stored rather than dropped.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Union

from herald.core.errors import ActivityValidationError
from herald.core.settings import settings

PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
PUBLIC_ALIASES = frozenset({PUBLIC_COLLECTION, "as:Public", "Public"})
ACTIVITY_CONTEXT = "https://www.w3.org/ns/activitystreams"


@dataclass(frozen=True)
class Follow:
    id: str | None
    actor: str
    object: str
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class Undo:
    id: str | None
    actor: str
    object: ParsedActivity | str | None
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class Accept:
    id: str | None
    actor: str
    object: ParsedActivity | str | None
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class Create:
    id: str | None
    actor: str
    object: Mapping[str, Any] | None
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class Move:
    id: str | None
    actor: str
    object: str | None
    target: str | None
    raw: Mapping[str, Any] = field(repr=False)


@dataclass(frozen=True)
class Unknown:
    type: str
    id: str | None
    actor: str
    raw: Mapping[str, Any] = field(repr=False)


ParsedActivity = Union[Follow, Undo, Accept, Create, Move, Unknown]


def reference_id(value: Any) -> str | None:
    """Return the id of a link or embedded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def as_id_list(value: Any) -> list[str]:
    """Normalise an addressing field (string, object or list) into a list of ids."""
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    ids = []
    for item in items:
        ref = reference_id(item)
        if ref:
            ids.append(ref)
    return ids


def addressed_recipients(activity: Mapping[str, Any]) -> list[str]:
    """Return the ``to`` and ``cc`` recipients in order, duplicates removed."""
    return list(dict.fromkeys(as_id_list(activity.get("to")) + as_id_list(activity.get("cc"))))


def is_public(activity: Mapping[str, Any]) -> bool:
    """Return True if the activity is addressed to the public collection."""
    return any(recipient in PUBLIC_ALIASES for recipient in addressed_recipients(activity))


def new_activity_id() -> str:
    return f"{settings.public_base_url}/activities/{uuid.uuid4()}"


def new_object_id() -> str:
    return f"{settings.public_base_url}/objects/{uuid.uuid4()}"


def isoformat_z(moment: datetime) -> str:
    """Format a timestamp the way activity payloads carry them."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse(raw: Any, *, require_actor: bool) -> ParsedActivity:
    if not isinstance(raw, Mapping):
        raise ActivityValidationError("Activity must be a JSON object")

    kind = raw.get("type")
    if isinstance(kind, list) and kind:
        kind = kind[0]
    if not isinstance(kind, str) or not kind:
        raise ActivityValidationError("Activity is missing 'type'")

    actor = reference_id(raw.get("actor"))
    if actor is None:
        if require_actor:
            raise ActivityValidationError("Activity is missing 'actor'")
        actor = ""

    activity_id = reference_id(raw.get("id"))
    obj = raw.get("object")

    if kind == "Follow":
        target = reference_id(obj)
        if target is None:
            raise ActivityValidationError("Follow is missing 'object'")
        return Follow(activity_id, actor, target, raw)
    if kind in {"Undo", "Accept"}:
        inner: ParsedActivity | str | None
        if isinstance(obj, Mapping) and obj.get("type"):
            inner = _parse(obj, require_actor=False)
        else:
            inner = reference_id(obj)
        cls = Undo if kind == "Undo" else Accept
        return cls(activity_id, actor, inner, raw)
    if kind == "Create":
        return Create(activity_id, actor, obj if isinstance(obj, Mapping) else None, raw)
    if kind == "Move":
        return Move(activity_id, actor, reference_id(obj), reference_id(raw.get("target")), raw)
    return Unknown(kind, activity_id, actor, raw)


def parse_activity(raw: Any) -> ParsedActivity:
    """Parse an inbound payload into its typed variant.

    Only the shape needed for dispatch is checked: ``type`` and ``actor`` must
    be present, and a ``Follow`` must name what it follows.

    Raises:
        ActivityValidationError: If the payload lacks the minimal shape.
    """
    return _parse(raw, require_actor=True)


def validate_outbound(activity: Any) -> None:
    """Check the minimal shape of a locally submitted activity.

    Raises:
        ActivityValidationError: If ``type`` or an embedded ``object.type`` is missing.
    """
    if not isinstance(activity, Mapping):
        raise ActivityValidationError("Activity must be a JSON object")
    if not isinstance(activity.get("type"), str) or not activity["type"]:
        raise ActivityValidationError("Activity is missing 'type'")
    obj = activity.get("object")
    if isinstance(obj, Mapping) and not obj.get("type"):
        raise ActivityValidationError("Embedded object is missing 'type'")
    if obj is None and activity["type"] in {"Create", "Update"}:
        raise ActivityValidationError("Activity is missing 'object'")
