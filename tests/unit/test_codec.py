"""
Unit tests for the session record codec.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from errors.exceptions import CorruptRecord
from session.codec import (
    ATTRIBUTE_PREFIX,
    CREATION_TIME_KEY,
    LAST_ACCESSED_TIME_KEY,
    MAX_INACTIVE_INTERVAL_KEY,
    decode_record,
    encode_delta,
    encode_metadata,
    from_millis,
    to_millis,
)
from session.session import SaveMode, Session


def _record(**overrides):
    record = {
        CREATION_TIME_KEY: "1704067200000",
        LAST_ACCESSED_TIME_KEY: "1704067230000",
        MAX_INACTIVE_INTERVAL_KEY: "1800",
        f"{ATTRIBUTE_PREFIX}cart": json.dumps(["sku-1"]),
    }
    record.update(overrides)
    return {k: v for k, v in record.items() if v is not None}


class TestMillis:
    """Tests for epoch millisecond conversion."""

    def test_known_instant(self):
        instant = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert to_millis(instant) == 1704067200000
        assert from_millis(1704067200000) == instant

    @given(st.integers(min_value=0, max_value=4102444800000))
    def test_from_millis_inverts_to_millis(self, millis):
        assert to_millis(from_millis(millis)) == millis


class TestEncode:
    """Tests for building hash writes."""

    def test_metadata_fields(self, clock):
        session = Session(clock=clock, max_inactive_interval=timedelta(minutes=30))
        metadata = encode_metadata(session)

        assert metadata == {
            CREATION_TIME_KEY: "1704067200000",
            LAST_ACCESSED_TIME_KEY: "1704067200000",
            MAX_INACTIVE_INTERVAL_KEY: "1800",
        }

    def test_new_session_writes_all_attributes(self, clock):
        session = Session(clock=clock, attributes={"user": {"id": 7}, "n": 1})
        to_set, to_delete = encode_delta(session)

        assert to_set[f"{ATTRIBUTE_PREFIX}user"] == '{"id": 7}'
        assert to_set[f"{ATTRIBUTE_PREFIX}n"] == "1"
        assert to_delete == []

    def test_removed_attribute_is_deleted(self, clock):
        session = Session(clock=clock, attributes={"a": 1, "b": 2}, is_new=False)
        session.remove_attribute("a")
        to_set, to_delete = encode_delta(session)

        assert to_delete == [f"{ATTRIBUTE_PREFIX}a"]
        assert f"{ATTRIBUTE_PREFIX}b" not in to_set
        assert LAST_ACCESSED_TIME_KEY in to_set

    def test_unserializable_attribute_raises_type_error(self, clock):
        session = Session(clock=clock, attributes={"bad": object()})
        with pytest.raises(TypeError):
            encode_delta(session)


class TestDecode:
    """Tests for rebuilding sessions from stored hashes."""

    def test_decodes_metadata_and_attributes(self):
        session = decode_record("abc", _record())

        assert session.id == "abc"
        assert not session.is_new
        assert session.creation_time == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert session.last_accessed_time == datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)
        assert session.max_inactive_interval == timedelta(seconds=1800)
        assert session.get_attribute("cart") == ["sku-1"]
        assert not session.has_changes

    def test_save_mode_is_applied(self):
        session = decode_record("abc", _record(), save_mode=SaveMode.ALWAYS)
        assert session.has_changes

    @pytest.mark.parametrize(
        "field",
        [CREATION_TIME_KEY, LAST_ACCESSED_TIME_KEY, MAX_INACTIVE_INTERVAL_KEY],
    )
    def test_missing_metadata_is_corrupt(self, field):
        with pytest.raises(CorruptRecord) as exc_info:
            decode_record("abc", _record(**{field: None}))

        assert exc_info.value.session_id == "abc"
        assert field in exc_info.value.details["reason"]

    def test_malformed_number_is_corrupt(self):
        with pytest.raises(CorruptRecord):
            decode_record("abc", _record(**{LAST_ACCESSED_TIME_KEY: "yesterday"}))

    def test_invalid_attribute_json_is_corrupt(self):
        with pytest.raises(CorruptRecord):
            decode_record("abc", _record(**{f"{ATTRIBUTE_PREFIX}cart": "{not json"}))

    def test_last_access_before_creation_is_corrupt(self):
        with pytest.raises(CorruptRecord):
            decode_record("abc", _record(**{LAST_ACCESSED_TIME_KEY: "1704067100000"}))

    def test_unknown_fields_are_ignored(self):
        session = decode_record("abc", _record(extra="x"))
        assert session.attribute_names == {"cart"}

