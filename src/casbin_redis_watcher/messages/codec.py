"""Change-notification wire codec.

Notifications travel as compact JSON objects whose keys are fixed
identifiers shared with the other Casbin watcher implementations:

- Method: one of the ``UpdateType`` values
- ID: local id of the publishing instance
- Sec / Ptype: policy section and policy type
- OldRule / NewRule: a single policy row
- OldRules / NewRules: several policy rows
- FieldIndex / FieldValues: filter used by filtered removals

Decoding is lenient about absent and unknown keys so that instances running
different versions can keep talking to each other.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from casbin_redis_watcher.errors import DecodeError


class UpdateType(StrEnum):
    """Kinds of policy change carried by a notification."""

    UPDATE = "Update"
    ADD_POLICY = "UpdateForAddPolicy"
    REMOVE_POLICY = "UpdateForRemovePolicy"
    REMOVE_FILTERED_POLICY = "UpdateForRemoveFilteredPolicy"
    SAVE_POLICY = "UpdateForSavePolicy"
    ADD_POLICIES = "UpdateForAddPolicies"
    REMOVE_POLICIES = "UpdateForRemovePolicies"
    UPDATE_POLICY = "UpdateForUpdatePolicy"
    UPDATE_POLICIES = "UpdateForUpdatePolicies"


@dataclass(slots=True)
class PolicyChange:
    """A policy mutation as seen by the enforcer, before it is stamped with an origin."""

    method: UpdateType | str = UpdateType.UPDATE
    sec: str = ""
    ptype: str = ""
    old_rule: list[str] = field(default_factory=list)
    old_rules: list[list[str]] = field(default_factory=list)
    new_rule: list[str] = field(default_factory=list)
    new_rules: list[list[str]] = field(default_factory=list)
    field_index: int = 0
    field_values: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChangeNotification:
    """The unit exchanged between watcher instances."""

    method: UpdateType | str
    origin_id: str
    sec: str = ""
    ptype: str = ""
    old_rule: list[str] = field(default_factory=list)
    old_rules: list[list[str]] = field(default_factory=list)
    new_rule: list[str] = field(default_factory=list)
    new_rules: list[list[str]] = field(default_factory=list)
    field_index: int = 0
    field_values: list[str] = field(default_factory=list)

    @classmethod
    def from_change(cls, change: PolicyChange, origin_id: str) -> ChangeNotification:
        return cls(
            method=change.method,
            origin_id=origin_id,
            sec=change.sec,
            ptype=change.ptype,
            old_rule=list(change.old_rule),
            old_rules=[list(r) for r in change.old_rules],
            new_rule=list(change.new_rule),
            new_rules=[list(r) for r in change.new_rules],
            field_index=change.field_index,
            field_values=list(change.field_values),
        )


def _coerce_method(value: Any) -> UpdateType | str:
    if not isinstance(value, str):
        msg = f"Method must be a string, got {type(value).__name__}"
        raise DecodeError(msg)
    try:
        return UpdateType(value)
    except ValueError:
        # Unknown kinds are kept verbatim for forward compatibility
        return value


def _str_field(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        msg = f"{key} must be a string, got {type(value).__name__}"
        raise DecodeError(msg)
    return value


def _rule_field(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"{key} must be a list of strings"
        raise DecodeError(msg)
    return list(value)


def _rules_field(data: dict[str, Any], key: str) -> list[list[str]]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"{key} must be a list of rules"
        raise DecodeError(msg)
    rules: list[list[str]] = []
    for row in value:
        if not isinstance(row, list) or not all(isinstance(v, str) for v in row):
            msg = f"{key} must be a list of rules"
            raise DecodeError(msg)
        rules.append(list(row))
    return rules


def _int_field(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    # bool is an int subclass but never a valid index
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{key} must be an integer, got {type(value).__name__}"
        raise DecodeError(msg)
    return value


def to_wire(notification: ChangeNotification) -> dict[str, Any]:
    """Build the wire mapping; empty optional fields are omitted."""
    payload: dict[str, Any] = {
        "Method": str(notification.method),
        "ID": notification.origin_id,
    }
    if notification.sec:
        payload["Sec"] = notification.sec
    if notification.ptype:
        payload["Ptype"] = notification.ptype
    if notification.old_rule:
        payload["OldRule"] = list(notification.old_rule)
    if notification.old_rules:
        payload["OldRules"] = [list(r) for r in notification.old_rules]
    if notification.new_rule:
        payload["NewRule"] = list(notification.new_rule)
    if notification.new_rules:
        payload["NewRules"] = [list(r) for r in notification.new_rules]
    payload["FieldIndex"] = notification.field_index
    if notification.field_values:
        payload["FieldValues"] = list(notification.field_values)
    return payload


def encode(notification: ChangeNotification) -> str:
    """Serialize a notification to its JSON wire text."""
    return json.dumps(to_wire(notification), separators=(",", ":"), ensure_ascii=False)


def decode(data: str | bytes) -> ChangeNotification:
    """Parse wire text into a notification.

    Raises:
        DecodeError: the payload is not UTF-8, not JSON, not a JSON object,
            or one of the known fields has the wrong shape.
    """
    if isinstance(data, bytes | bytearray | memoryview):
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            msg = f"Payload is not valid UTF-8: {exc}"
            raise DecodeError(msg) from exc
    elif not isinstance(data, str):
        msg = f"Payload must be text or bytes, got {type(data).__name__}"
        raise DecodeError(msg)

    try:
        raw = json.loads(data)
    except (ValueError, RecursionError) as exc:
        # JSONDecodeError, or an integer literal past the digit limit
        msg = f"Payload is not valid JSON: {exc}"
        raise DecodeError(msg) from exc

    if not isinstance(raw, dict):
        msg = f"Expected a JSON object, got {type(raw).__name__}"
        raise DecodeError(msg)

    method = raw.get("Method")
    return ChangeNotification(
        method=UpdateType.UPDATE if method is None else _coerce_method(method),
        origin_id=_str_field(raw, "ID"),
        sec=_str_field(raw, "Sec"),
        ptype=_str_field(raw, "Ptype"),
        old_rule=_rule_field(raw, "OldRule"),
        old_rules=_rules_field(raw, "OldRules"),
        new_rule=_rule_field(raw, "NewRule"),
        new_rules=_rules_field(raw, "NewRules"),
        field_index=_int_field(raw, "FieldIndex"),
        field_values=_rule_field(raw, "FieldValues"),
    )
