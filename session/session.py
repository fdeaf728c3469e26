"""
In-memory session entity with change tracking.

A Session holds attributes, timing metadata and the expiration policy of
one user session. It records which fields changed since it was loaded so
the repository can persist a delta instead of the whole record. Nothing in
this module performs I/O; persistence is the repository's job.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

# Attribute whose value is indexed for find_by_principal_name()
PRINCIPAL_NAME_ATTRIBUTE = "PRINCIPAL_NAME"

DEFAULT_MAX_INACTIVE_INTERVAL = timedelta(seconds=1800)

ONE_SECOND = timedelta(seconds=1)

Clock = Callable[[], datetime]


class SaveMode(str, Enum):
    """Which attributes are written back when a loaded session is saved."""
    ON_SET_ATTRIBUTE = "on_set_attribute"
    ON_GET_ATTRIBUTE = "on_get_attribute"
    ALWAYS = "always"


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond precision, which the stored record cannot carry."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    """Current UTC time at millisecond precision."""
    return truncate_to_millis(datetime.now(timezone.utc))


def generate_session_id() -> str:
    return str(uuid.uuid4())


def as_interval(value: Union[timedelta, int, float]) -> timedelta:
    """
    Accept a timedelta or a number of seconds.

    Records store whole seconds, so fractions round up: a positive interval
    never collapses to zero, which would mean "never expires".
    """
    if not isinstance(value, timedelta):
        value = timedelta(seconds=value)
    return timedelta(seconds=-(-value // ONE_SECOND))


class Session:
    """
    A server-held bundle of user state keyed by an opaque id.

    Sessions are created by SessionRepository.create_session() or loaded
    by SessionRepository.get_session(); they are not meant to be built
    directly by application code.

    Attributes:
        id: Current session id (changes only through change_session_id())
        creation_time: When the session was created
        last_accessed_time: Last access or mutation
        max_inactive_interval: Inactivity allowed before expiration;
            zero or negative means the session never expires
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        *,
        creation_time: Optional[datetime] = None,
        last_accessed_time: Optional[datetime] = None,
        max_inactive_interval: Union[timedelta, int] = DEFAULT_MAX_INACTIVE_INTERVAL,
        attributes: Optional[dict[str, Any]] = None,
        is_new: bool = True,
        save_mode: SaveMode = SaveMode.ON_SET_ATTRIBUTE,
        clock: Clock = utcnow,
    ):
        self._clock = clock
        self._id = session_id or generate_session_id()
        now = truncate_to_millis(clock())
        self._creation_time = truncate_to_millis(creation_time or now)
        self._last_accessed_time = truncate_to_millis(last_accessed_time or self._creation_time)
        self._max_inactive_interval = as_interval(max_inactive_interval)
        self._attributes: dict[str, Any] = {
            name: value for name, value in (attributes or {}).items() if value is not None
        }
        self._save_mode = SaveMode(save_mode)
        self._is_new = is_new

        # Snapshot of what the store holds, used to compute the delta and to
        # find the index entries written by the previous save.
        self._original_id = self._id
        self._original_last_accessed_time: Optional[datetime] = (
            None if is_new else self._last_accessed_time
        )
        self._original_max_inactive_interval: Optional[timedelta] = (
            None if is_new else self._max_inactive_interval
        )
        self._original_principal: Optional[str] = (
            None if is_new else self.principal_name
        )
        self._changed_attributes: set[str] = set()
        self._metadata_changed = is_new

    # -- identity -------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def original_id(self) -> str:
        """The id under which the store currently holds this session."""
        return self._original_id

    @property
    def is_new(self) -> bool:
        """True until the first successful save."""
        return self._is_new

    def change_session_id(self) -> str:
        """
        Issue a fresh id for this session.

        The store keeps the old id until the next save, which deletes the
        old record and writes the session under the new id.
        """
        self._id = generate_session_id()
        return self._id

    # -- timing ---------------------------------------------------------

    @property
    def creation_time(self) -> datetime:
        return self._creation_time

    @property
    def last_accessed_time(self) -> datetime:
        return self._last_accessed_time

    @last_accessed_time.setter
    def last_accessed_time(self, value: datetime) -> None:
        value = truncate_to_millis(value)
        if value < self._creation_time:
            raise ValueError("last_accessed_time cannot precede creation_time")
        self._last_accessed_time = value
        self._metadata_changed = True

    def touch(self) -> None:
        """Record an access at the current time."""
        now = truncate_to_millis(self._clock())
        if now > self._last_accessed_time:
            self.last_accessed_time = now

    @property
    def max_inactive_interval(self) -> timedelta:
        return self._max_inactive_interval

    def set_max_inactive_interval(self, interval: Union[timedelta, int]) -> None:
        """Change the expiration policy of this session; applied on next save."""
        self._max_inactive_interval = as_interval(interval)
        self._metadata_changed = True

    @property
    def expires(self) -> bool:
        return self._max_inactive_interval > timedelta(0)

    @property
    def expires_at(self) -> Optional[datetime]:
        """When the session becomes eligible for expiration, or None if never."""
        if not self.expires:
            return None
        return self._last_accessed_time + self._max_inactive_interval

    @property
    def original_last_accessed_time(self) -> Optional[datetime]:
        """lastAccessedTime as last persisted, or None if never persisted."""
        return self._original_last_accessed_time

    @property
    def original_expires_at(self) -> Optional[datetime]:
        """Expiration time as last persisted, or None if never persisted or not expiring."""
        if self._original_last_accessed_time is None or self._original_max_inactive_interval is None:
            return None
        if self._original_max_inactive_interval <= timedelta(0):
            return None
        return self._original_last_accessed_time + self._original_max_inactive_interval

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True iff the interval is positive and more than it has passed since last access."""
        if not self.expires:
            return False
        if now is None:
            now = self._clock()
        return now - self._last_accessed_time > self._max_inactive_interval

    # -- attributes -----------------------------------------------------

    def get_attribute(self, name: str, default: Any = None) -> Any:
        value = self._attributes.get(name)
        if value is None:
            return default
        if self._save_mode == SaveMode.ON_GET_ATTRIBUTE:
            self._changed_attributes.add(name)
        return value

    def set_attribute(self, name: str, value: Any) -> None:
        """Set an attribute; a value of None removes it."""
        if value is None:
            self.remove_attribute(name)
            return
        self._attributes[name] = value
        self._changed_attributes.add(name)
        self.touch()

    def remove_attribute(self, name: str) -> None:
        self._attributes.pop(name, None)
        self._changed_attributes.add(name)
        self.touch()

    @property
    def attribute_names(self) -> set[str]:
        return set(self._attributes)

    @property
    def attributes(self) -> dict[str, Any]:
        """A copy of the attribute mapping."""
        return dict(self._attributes)

    @property
    def principal_name(self) -> Optional[str]:
        value = self._attributes.get(PRINCIPAL_NAME_ATTRIBUTE)
        return None if value is None else str(value)

    @property
    def original_principal_name(self) -> Optional[str]:
        return self._original_principal

    # -- change tracking (used by the repository) -----------------------

    @property
    def is_rotated(self) -> bool:
        return self._id != self._original_id

    @property
    def has_changes(self) -> bool:
        return (
            self._is_new
            or self.is_rotated
            or self._metadata_changed
            or bool(self._changed_attributes)
            or (self._save_mode == SaveMode.ALWAYS and bool(self._attributes))
        )

    def dirty_attribute_names(self) -> Iterable[str]:
        """Names of attributes to write on the next save (removed ones included)."""
        if self._is_new or self.is_rotated or self._save_mode == SaveMode.ALWAYS:
            return set(self._attributes) | self._changed_attributes
        return set(self._changed_attributes)

    def mark_saved(self) -> None:
        """Reset change tracking after the repository committed this session."""
        self._is_new = False
        self._original_id = self._id
        self._original_last_accessed_time = self._last_accessed_time
        self._original_max_inactive_interval = self._max_inactive_interval
        self._original_principal = self.principal_name
        self._changed_attributes.clear()
        self._metadata_changed = False

    def __repr__(self) -> str:
        return (
            f"Session(id={self._id!r}, last_accessed_time={self._last_accessed_time.isoformat()}, "
            f"max_inactive_interval={self._max_inactive_interval!r}, "
            f"attributes={sorted(self._attributes)!r})"
        )
