"""
Data types for carenotes records.

Nodes are a tagged union keyed by ``nodetype``. Each tag has a
NodeSchema describing the payload fields the entry form collects;
the storage and search layers treat the payload as opaque JSON text.
"""

import json
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> str:
    """Current UTC timestamp in ISO format with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_id(length: int = 12) -> str:
    """Random opaque row identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def new_universal_code() -> str:
    """External-facing record code, e.g. ``UC-7K2QX9A``."""
    return "UC-" + new_id(7).upper()


def encode_payload(payload: Optional[dict[str, str]]) -> Optional[str]:
    if not payload:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def decode_payload(text: Optional[str]) -> dict[str, str]:
    """Parse a stored payload; malformed text yields an empty mapping."""
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


# -----------------------------------------------------------------------------
# Node-type registry
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class NodeSchema:
    """
    Payload shape for one node type.

    Attributes:
        nodetype: Tag stored in the ``nodetype`` column
        label: Human-readable name
        fields: Payload keys the type accepts, in display order
        choices: Allowed values for fields that are a fixed selection
        requires_parent: Whether records of this type attach to a parent node
        parent_type: The node type a parent must have, if constrained
    """
    nodetype: str
    label: str
    fields: tuple[str, ...]
    choices: dict[str, tuple[str, ...]] = field(default_factory=dict)
    requires_parent: bool = False
    parent_type: Optional[str] = None

    def validate(self, payload: dict[str, str]) -> None:
        unknown = sorted(set(payload) - set(self.fields))
        if unknown:
            raise ValueError(
                f"Unknown payload field(s) for {self.nodetype}: {', '.join(unknown)}. "
                f"Allowed: {', '.join(self.fields)}"
            )
        for key, allowed in self.choices.items():
            value = payload.get(key)
            if value and value not in allowed:
                raise ValueError(
                    f"Invalid {key} for {self.nodetype}: {value!r}. "
                    f"Choose one of: {', '.join(allowed)}"
                )


GENERIC_SCHEMA = NodeSchema(nodetype="*", label="Record", fields=("notes",))

_NODE_TYPES: dict[str, NodeSchema] = {}


def register_node_type(schema: NodeSchema) -> None:
    """Add or replace a node type in the registry."""
    _NODE_TYPES[schema.nodetype] = schema


def get_node_schema(nodetype: str) -> NodeSchema:
    """Schema for a node type; unknown types get the generic notes-only schema."""
    return _NODE_TYPES.get(nodetype, GENERIC_SCHEMA)


def node_types() -> list[NodeSchema]:
    return list(_NODE_TYPES.values())


def validate_payload(nodetype: str, payload: dict[str, str]) -> None:
    """Raise ValueError if payload doesn't fit the node type's schema."""
    get_node_schema(nodetype).validate(payload)


for _schema in (
    NodeSchema(
        "Patient", "Patient",
        ("dob", "gender", "contact", "address"),
        choices={"gender": ("Male", "Female", "Other")},
    ),
    NodeSchema(
        "Diagnosis", "Diagnosis",
        ("severity", "status", "onset_date", "notes"),
        choices={"severity": ("Mild", "Moderate", "Severe"), "status": ("Acute", "Chronic")},
        requires_parent=True, parent_type="Patient",
    ),
    NodeSchema(
        "Prescription", "Prescription",
        ("dosage", "frequency", "duration", "instructions"),
        requires_parent=True, parent_type="Patient",
    ),
    NodeSchema(
        "LabResult", "Lab Result",
        ("value", "unit", "ref_range", "provider"),
        requires_parent=True, parent_type="Patient",
    ),
    NodeSchema(
        "Vitals", "Vitals",
        ("value", "unit", "time", "notes"),
        requires_parent=True, parent_type="Patient",
    ),
    NodeSchema(
        "Procedure", "Procedure",
        ("date", "provider", "location", "outcome"),
        requires_parent=True, parent_type="Patient",
    ),
):
    register_node_type(_schema)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@dataclass
class Node:
    """A clinical/commerce record (row of the ``nodes`` table)."""
    id: str
    nodetype: str
    universalcode: str
    title: str
    parentid: Optional[str] = None
    payload: dict[str, str] = field(default_factory=dict)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "nodetype": self.nodetype,
            "universalcode": self.universalcode,
            "title": self.title,
            "parentid": self.parentid,
            "payload": encode_payload(self.payload),
        }

    @classmethod
    def from_row(cls, row: dict) -> "Node":
        return cls(
            id=row["id"],
            nodetype=row["nodetype"],
            universalcode=row["universalcode"],
            title=row["title"],
            parentid=row.get("parentid"),
            payload=decode_payload(row.get("payload")),
        )


def new_node(
    nodetype: str,
    title: str,
    *,
    parentid: Optional[str] = None,
    payload: Optional[dict[str, str]] = None,
    universalcode: Optional[str] = None,
    id: Optional[str] = None,
) -> Node:
    """
    Build a validated Node, generating id and universal code when absent.

    Raises:
        ValueError: If the title is blank, the payload doesn't match the
            node type, or a required parent is missing
    """
    title = title.strip()
    if not title:
        raise ValueError("A title or name is required")
    payload = {k: v for k, v in (payload or {}).items() if v}
    schema = get_node_schema(nodetype)
    schema.validate(payload)
    if schema.requires_parent and not parentid:
        raise ValueError(f"{nodetype} records must be attached to a parent")
    return Node(
        id=id or new_id(),
        nodetype=nodetype,
        universalcode=universalcode or new_universal_code(),
        title=title,
        parentid=parentid,
        payload=payload,
    )


@dataclass
class Actor:
    """A participant (person or organisation)."""
    id: str
    actortype: str
    globalcode: str
    name: str
    parentid: Optional[str] = None
    metadata: Optional[str] = None
    pushtoken: Optional[str] = None

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "actortype": self.actortype,
            "globalcode": self.globalcode,
            "name": self.name,
            "parentid": self.parentid,
            "metadata": self.metadata,
            "pushtoken": self.pushtoken,
        }


@dataclass
class OREvent:
    """An append-only operational event."""
    id: str
    streamid: str
    opcode: int
    refid: str
    scope: str
    status: str = "pending"
    payload: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    delta: float = 0.0
    ts: str = field(default_factory=utc_now)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "streamid": self.streamid,
            "opcode": self.opcode,
            "refid": self.refid,
            "lat": self.lat,
            "lng": self.lng,
            "delta": self.delta,
            "payload": self.payload,
            "scope": self.scope,
            "status": self.status,
            "ts": self.ts,
        }
