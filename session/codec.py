"""
Mapping between Session entities and stored hash records.

A stored record is a flat string hash:

    creationTime          epoch milliseconds
    lastAccessedTime      epoch milliseconds
    maxInactiveInterval   whole seconds
    sessionAttr:<name>    JSON-encoded attribute value
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from errors.exceptions import corrupt_record
from session.session import Clock, SaveMode, Session, utcnow

CREATION_TIME_KEY = "creationTime"
LAST_ACCESSED_TIME_KEY = "lastAccessedTime"
MAX_INACTIVE_INTERVAL_KEY = "maxInactiveInterval"
ATTRIBUTE_PREFIX = "sessionAttr:"


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MILLI = timedelta(milliseconds=1)


def to_millis(value: datetime) -> int:
    return (value - EPOCH) // ONE_MILLI


def from_millis(value: int) -> datetime:
    return EPOCH + value * ONE_MILLI


def attribute_field(name: str) -> str:
    return ATTRIBUTE_PREFIX + name


def encode_metadata(session: Session) -> dict[str, str]:
    return {
        CREATION_TIME_KEY: str(to_millis(session.creation_time)),
        LAST_ACCESSED_TIME_KEY: str(to_millis(session.last_accessed_time)),
        MAX_INACTIVE_INTERVAL_KEY: str(int(session.max_inactive_interval.total_seconds())),
    }


def encode_delta(session: Session) -> tuple[dict[str, str], list[str]]:
    """
    Build the hash writes for a session's pending changes.

    Returns:
        (fields to set, fields to delete). Metadata is always included so
        that a save refreshes lastAccessedTime even when no attribute moved.

    Raises:
        TypeError: If an attribute value is not JSON serializable.
    """
    to_set = encode_metadata(session)
    to_delete = []
    attributes = session.attributes
    for name in sorted(session.dirty_attribute_names()):
        if name in attributes:
            to_set[attribute_field(name)] = json.dumps(attributes[name])
        else:
            to_delete.append(attribute_field(name))
    return to_set, to_delete


def decode_record(
    session_id: str,
    record: dict[str, str],
    save_mode: SaveMode = SaveMode.ON_SET_ATTRIBUTE,
    clock: Clock = utcnow,
) -> Session:
    """
    Rebuild a Session from its stored hash.

    Raises:
        CorruptRecord: If a metadata field is missing or malformed, or an
            attribute value is not valid JSON.
    """
    try:
        creation_ms = int(record[CREATION_TIME_KEY])
        last_accessed_ms = int(record[LAST_ACCESSED_TIME_KEY])
        interval_seconds = int(record[MAX_INACTIVE_INTERVAL_KEY])
    except KeyError as e:
        raise corrupt_record(session_id, f"missing field {e.args[0]}") from e
    except (TypeError, ValueError) as e:
        raise corrupt_record(session_id, f"malformed metadata: {e}") from e

    attributes: dict[str, Any] = {}
    for field, raw in record.items():
        if not field.startswith(ATTRIBUTE_PREFIX):
            continue
        try:
            attributes[field[len(ATTRIBUTE_PREFIX):]] = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise corrupt_record(session_id, f"undecodable attribute {field}") from e

    creation_time = from_millis(creation_ms)
    last_accessed_time = from_millis(last_accessed_ms)
    if last_accessed_time < creation_time:
        raise corrupt_record(session_id, "lastAccessedTime precedes creationTime")

    return Session(
        session_id,
        creation_time=creation_time,
        last_accessed_time=last_accessed_time,
        max_inactive_interval=timedelta(seconds=interval_seconds),
        attributes=attributes,
        is_new=False,
        save_mode=save_mode,
        clock=clock,
    )

