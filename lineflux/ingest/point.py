"""
Point Model

Immutable representation of one measurement record:

    Point("cpu").tag("host", "server01").field("usage_idle", 90.5).time(1609459200, WritePrecision.S)

Every builder call returns a new Point; the original is never modified.
Field values are stored as a tagged variant (FieldValue) so the encoder can
dispatch on the kind instead of re-inspecting Python types.
"""

import math
import dataclasses
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from lineflux.config import WritePrecision
from lineflux.exceptions import EncodingError

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Timestamp = Union[int, datetime]


class FieldKind(Enum):
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    STRING = "string"


@dataclass(frozen=True)
class FieldValue:
    """A field value tagged with its line protocol type"""

    kind: FieldKind
    value: Union[int, float, bool, str]

    @classmethod
    def of(cls, value: Any) -> "FieldValue":
        """
        Classify a Python value

        Raises:
            EncodingError: unsupported type, non-finite float, or int outside int64
        """
        if isinstance(value, FieldValue):
            return value
        # bool is a subclass of int, check it first
        if isinstance(value, bool):
            return cls(FieldKind.BOOLEAN, value)
        if isinstance(value, int):
            if not INT64_MIN <= value <= INT64_MAX:
                raise EncodingError(f"Integer field value out of int64 range: {value}")
            return cls(FieldKind.INTEGER, value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise EncodingError(f"Float field value must be finite: {value}")
            return cls(FieldKind.FLOAT, value)
        if isinstance(value, str):
            return cls(FieldKind.STRING, value)
        raise EncodingError(f"Unsupported field value type {type(value).__name__}: {value!r}")


@dataclass(frozen=True)
class Point:
    """One time-series record"""

    measurement: str
    tags: Mapping[str, str] = dataclasses.field(default_factory=dict)
    fields: Mapping[str, FieldValue] = dataclasses.field(default_factory=dict)
    timestamp: Optional[Timestamp] = None
    precision: Optional[WritePrecision] = None

    def __post_init__(self):
        # Freeze the mappings so a Point can't be changed through them
        object.__setattr__(
            self,
            "tags",
            MappingProxyType({key: str(value) for key, value in self.tags.items() if value is not None})
        )
        object.__setattr__(
            self,
            "fields",
            MappingProxyType({key: FieldValue.of(value) for key, value in self.fields.items() if value is not None})
        )
        if self.precision is not None:
            object.__setattr__(self, "precision", WritePrecision.parse(self.precision))

    def tag(self, key: str, value: Any) -> "Point":
        """Return a copy with the tag set; a None value removes the tag"""
        tags = dict(self.tags)
        if value is None:
            tags.pop(key, None)
        else:
            tags[key] = str(value)
        return replace(self, tags=tags)

    def field(self, key: str, value: Any) -> "Point":
        """Return a copy with the field set; a None value removes the field"""
        fields = dict(self.fields)
        if value is None:
            fields.pop(key, None)
        else:
            fields[key] = FieldValue.of(value)
        return replace(self, fields=fields)

    def time(self, timestamp: Optional[Timestamp], precision: Optional[WritePrecision] = None) -> "Point":
        """Return a copy with the timestamp (int in `precision` units, or datetime)"""
        return replace(self, timestamp=timestamp, precision=precision)

    def with_default_tags(self, default_tags: Mapping[str, str]) -> "Point":
        """Return a copy with default tags added; the point's own tags win"""
        if not default_tags:
            return self
        tags = dict(default_tags)
        tags.update(self.tags)
        return replace(self, tags=tags)

    def timestamp_in(self, precision: WritePrecision) -> Optional[int]:
        """
        Timestamp as integer units of `precision`

        Integers are taken in the point's own precision when it has one,
        otherwise they are assumed to already be in `precision`.
        Coarsening rounds toward negative infinity.
        """
        if self.timestamp is None:
            return None

        if isinstance(self.timestamp, datetime):
            return datetime_to_nanos(self.timestamp) // precision.nanoseconds

        if isinstance(self.timestamp, bool) or not isinstance(self.timestamp, int):
            raise EncodingError(f"Unsupported timestamp type {type(self.timestamp).__name__}", point=self)

        if self.precision is None or self.precision == precision:
            return self.timestamp
        return self.timestamp * self.precision.nanoseconds // precision.nanoseconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "measurement": self.measurement,
            "tags": dict(self.tags),
            "fields": {key: value.value for key, value in self.fields.items()},
            "time": self.timestamp,
        }

    @classmethod
    def from_dict(cls, record: Mapping[str, Any], precision: Optional[WritePrecision] = None) -> "Point":
        """
        Build a point from a dictionary

        Accepts the shape produced by LineProtocolParser:
            {"measurement": "cpu", "tags": {...}, "fields": {...}, "time": 1609459200000000000}
        'timestamp' is accepted as an alias of 'time'.
        """
        if "measurement" not in record:
            raise EncodingError(f"Record has no measurement: {record!r}")
        timestamp = record.get("time", record.get("timestamp"))
        return cls(
            measurement=record["measurement"],
            tags=dict(record.get("tags") or {}),
            fields=dict(record.get("fields") or {}),
            timestamp=timestamp,
            precision=WritePrecision.parse(precision) if precision is not None else None
        )

    def __repr__(self):
        fields = {key: value.value for key, value in self.fields.items()}
        return (
            f"Point(measurement={self.measurement!r}, tags={dict(self.tags)!r}, "
            f"fields={fields!r}, timestamp={self.timestamp!r})"
        )


def datetime_to_nanos(value: datetime) -> int:
    """Nanoseconds since the Unix epoch; naive datetimes are treated as UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000
