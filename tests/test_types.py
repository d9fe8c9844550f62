"""Tests for record types and the node-type registry."""

import re

import pytest

from carenotes.types import (
    GENERIC_SCHEMA,
    Node,
    NodeSchema,
    decode_payload,
    get_node_schema,
    new_id,
    new_node,
    new_universal_code,
    node_types,
    register_node_type,
    utc_now,
)


def test_builtin_types_registered():
    names = [s.nodetype for s in node_types()]
    assert names[:6] == ["Patient", "Diagnosis", "Prescription", "LabResult", "Vitals", "Procedure"]


def test_unknown_type_falls_back_to_notes():
    assert get_node_schema("Referral") is GENERIC_SCHEMA
    node = new_node("Referral", "Cardiology referral", payload={"notes": "urgent"})
    assert node.payload == {"notes": "urgent"}


def test_new_node_generates_identifiers():
    node = new_node("Patient", "  Jane Doe  ", payload={"gender": "Female", "dob": ""})
    assert node.title == "Jane Doe"
    assert re.fullmatch(r"[a-z0-9]{12}", node.id)
    assert re.fullmatch(r"UC-[A-Z0-9]{7}", node.universalcode)
    assert node.payload == {"gender": "Female"}


def test_new_node_keeps_given_code():
    assert new_node("Patient", "Jane", universalcode="UC-FIXED").universalcode == "UC-FIXED"


def test_blank_title_rejected():
    with pytest.raises(ValueError, match="title"):
        new_node("Patient", "   ")


def test_unknown_field_rejected():
    with pytest.raises(ValueError, match="Unknown payload field"):
        new_node("Patient", "Jane", payload={"blood_type": "O+"})


def test_invalid_choice_rejected():
    with pytest.raises(ValueError, match="severity"):
        new_node("Diagnosis", "Asthma", parentid="p1", payload={"severity": "Extreme"})


def test_child_type_requires_parent():
    with pytest.raises(ValueError, match="parent"):
        new_node("Prescription", "Metformin")


def test_register_custom_type():
    register_node_type(NodeSchema("Allergy", "Allergy", ("reaction",), requires_parent=True))
    try:
        node = new_node("Allergy", "Penicillin", parentid="p1", payload={"reaction": "rash"})
        assert node.payload == {"reaction": "rash"}
    finally:
        from carenotes import types
        types._NODE_TYPES.pop("Allergy", None)


def test_node_row_round_trip():
    node = new_node("Vitals", "Blood pressure", parentid="p1",
                    payload={"value": "120/80", "unit": "mmHg"})
    assert Node.from_row(node.to_row()) == node


@pytest.mark.parametrize("text", [None, "", "not json", "[1, 2]"])
def test_decode_malformed_payload(text):
    assert decode_payload(text) == {}


def test_identifiers_are_unique():
    assert len({new_id() for _ in range(100)}) == 100
    assert new_universal_code() != new_universal_code()


def test_utc_now_format():
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", utc_now())
