"""Unit tests for the change-notification wire codec."""

from __future__ import annotations

import json

import pytest

from casbin_redis_watcher.errors import DecodeError
from casbin_redis_watcher.messages.codec import (
    ChangeNotification,
    PolicyChange,
    UpdateType,
    decode,
    encode,
)


class TestEncode:
    def test_generic_update_has_only_required_fields(self):
        text = encode(ChangeNotification(UpdateType.UPDATE, "node-a"))
        assert json.loads(text) == {"Method": "Update", "ID": "node-a", "FieldIndex": 0}

    def test_add_policy_field_names(self):
        text = encode(
            ChangeNotification(
                UpdateType.ADD_POLICY,
                "node-a",
                sec="p",
                ptype="p",
                new_rule=["alice", "data1", "read"],
            )
        )
        assert json.loads(text) == {
            "Method": "UpdateForAddPolicy",
            "ID": "node-a",
            "Sec": "p",
            "Ptype": "p",
            "NewRule": ["alice", "data1", "read"],
            "FieldIndex": 0,
        }

    def test_update_policies_carries_both_rule_sets(self):
        parsed = json.loads(
            encode(
                ChangeNotification(
                    UpdateType.UPDATE_POLICIES,
                    "x",
                    sec="p",
                    ptype="p",
                    old_rules=[["a", "b"], ["c", "d"]],
                    new_rules=[["e", "f"]],
                )
            )
        )
        assert parsed["OldRules"] == [["a", "b"], ["c", "d"]]
        assert parsed["NewRules"] == [["e", "f"]]
        assert "OldRule" not in parsed

    def test_filtered_removal_fields(self):
        parsed = json.loads(
            encode(
                ChangeNotification(
                    UpdateType.REMOVE_FILTERED_POLICY,
                    "x",
                    sec="p",
                    ptype="p",
                    field_index=1,
                    field_values=["data1"],
                )
            )
        )
        assert parsed["FieldIndex"] == 1
        assert parsed["FieldValues"] == ["data1"]

    def test_deterministic(self):
        n = ChangeNotification(UpdateType.ADD_POLICY, "x", sec="p", new_rule=["a"])
        assert encode(n) == encode(n)

    def test_non_ascii_rules_survive(self):
        n = ChangeNotification(UpdateType.ADD_POLICY, "x", new_rule=["名字", "数据"])
        assert decode(encode(n)).new_rule == ["名字", "数据"]


class TestDecode:
    @pytest.mark.parametrize("method", list(UpdateType))
    def test_round_trip_every_method(self, method: UpdateType):
        original = ChangeNotification(
            method,
            "origin",
            sec="g",
            ptype="g2",
            old_rule=["a", "b"],
            old_rules=[["c", "d"]],
            new_rule=["e"],
            new_rules=[["f", "g"], ["h"]],
            field_index=2,
            field_values=["v1", "v2"],
        )
        assert decode(encode(original)) == original

    def test_accepts_bytes(self):
        n = decode(b'{"Method":"UpdateForSavePolicy","ID":"b"}')
        assert n.method is UpdateType.SAVE_POLICY
        assert n.origin_id == "b"

    def test_absent_fields_take_defaults(self):
        n = decode('{"Method":"UpdateForAddPolicy","ID":"a"}')
        assert n.sec == ""
        assert n.ptype == ""
        assert n.new_rule == []
        assert n.new_rules == []
        assert n.field_index == 0

    def test_missing_method_means_generic_update(self):
        assert decode('{"ID":"a"}').method is UpdateType.UPDATE

    def test_unknown_extra_fields_ignored(self):
        n = decode('{"Method":"Update","ID":"a","Timestamp":123,"Extra":{"x":1}}')
        assert n.method is UpdateType.UPDATE

    def test_unknown_method_preserved(self):
        n = decode('{"Method":"UpdateForSomethingNew","ID":"a"}')
        assert n.method == "UpdateForSomethingNew"
        assert not isinstance(n.method, UpdateType)
        assert json.loads(encode(n))["Method"] == "UpdateForSomethingNew"

    def test_null_fields_tolerated(self):
        n = decode('{"Method":"Update","ID":"a","NewRule":null,"Sec":null}')
        assert n.new_rule == []
        assert n.sec == ""

    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "Close",
            "{not json",
            "[1, 2, 3]",
            '"just a string"',
            "42",
            '{"Method": 7, "ID": "a"}',
            '{"Method": "Update", "ID": ["a"]}',
            '{"Method": "Update", "NewRule": "alice"}',
            '{"Method": "Update", "NewRules": [["a"], "b"]}',
            '{"Method": "Update", "FieldIndex": "1"}',
            '{"Method": "Update", "FieldIndex": true}',
        ],
    )
    def test_malformed_raises_decode_error(self, payload: str):
        with pytest.raises(DecodeError):
            decode(payload)

    def test_oversized_integer_raises_decode_error(self):
        payload = '{"Method":"Update","ID":"x","FieldIndex":' + "1" * 5000 + "}"
        with pytest.raises(DecodeError):
            decode(payload)

    def test_invalid_utf8_raises_decode_error(self):
        with pytest.raises(DecodeError, match="UTF-8"):
            decode(b"\xff\xfe\x00")

    def test_non_text_raises_decode_error(self):
        with pytest.raises(DecodeError):
            decode(None)  # type: ignore[arg-type]

    def test_decode_error_is_value_error(self):
        with pytest.raises(ValueError):
            decode("{")


class TestFromChange:
    def test_stamps_origin_and_copies_rules(self):
        change = PolicyChange(
            UpdateType.ADD_POLICIES, sec="p", ptype="p", new_rules=[["a", "b"]]
        )
        n = ChangeNotification.from_change(change, "me")
        assert n.origin_id == "me"
        assert n.new_rules == [["a", "b"]]
        change.new_rules[0].append("c")
        assert n.new_rules == [["a", "b"]]

    def test_default_change_is_generic_update(self):
        n = ChangeNotification.from_change(PolicyChange(), "me")
        assert n.method is UpdateType.UPDATE
        assert n.sec == ""
