"""
InfluxDB Line Protocol Encoder and Parser

Serializes Points into line protocol and parses line protocol back into
structured records.

Line Protocol Format:
    measurement[,tag_key=tag_value...] field_key=field_value[,field_key=field_value...] [timestamp]

Examples:
    cpu,host=server01,region=us-west usage_idle=90.5,usage_system=2.1 1609459200000000000
    temperature,sensor=bedroom temp=22.5
    http_requests,method=GET,status=200 count=1i,ok=t,path="/index.html"

Escaping:
    - measurement, tag keys, tag values, field keys: comma, space and equals
      sign and backslash are backslash-escaped; newline, carriage return and tab become
      \\n, \\r and \\t so a record always stays on one line
    - string field values: wrapped in double quotes, with internal double
      quotes and backslashes backslash-escaped
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from lineflux.config import WritePrecision
from lineflux.exceptions import EncodingError
from lineflux.ingest.point import FieldKind, FieldValue, Point

logger = logging.getLogger(__name__)

_NAME_ESCAPES = str.maketrans({
    '\\': '\\\\',
    ',': '\\,',
    ' ': '\\ ',
    '=': '\\=',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
})

_STRING_FIELD_ESCAPES = str.maketrans({
    '\\': '\\\\',
    '"': '\\"',
})

# Parser side: escaped character -> literal
_NAME_UNESCAPES = {
    '\\': '\\',
    ',': ',',
    ' ': ' ',
    '=': '=',
    'n': '\n',
    'r': '\r',
    't': '\t',
}

_TRUE_VALUES = ('t', 'true')
_FALSE_VALUES = ('f', 'false')


class LineProtocolEncoder:
    """Encoder for InfluxDB Line Protocol"""

    @staticmethod
    def encode(point: Point, precision: WritePrecision = WritePrecision.NS) -> str:
        """
        Encode a single point

        Args:
            point: Point to encode
            precision: Unit of the emitted timestamp

        Returns:
            One line of line protocol (without trailing newline)

        Raises:
            EncodingError: measurement or fields missing, or a value can't be represented
        """
        if not isinstance(point.measurement, str) or not point.measurement:
            raise EncodingError("Point has no measurement", point=point)
        if not point.fields:
            raise EncodingError(f"Point '{point.measurement}' has no fields", point=point)

        overlap = set(point.tags) & set(point.fields)
        if overlap:
            raise EncodingError(
                f"Keys used as both tag and field in '{point.measurement}': {sorted(overlap)}",
                point=point
            )

        for key in point.tags:
            if not isinstance(key, str):
                raise EncodingError(f"Tag key must be a string, got {key!r}", point=point)

        parts = [LineProtocolEncoder._escape_name(point.measurement, point)]

        # Tags in lexicographic key order for canonical output
        for key in sorted(point.tags):
            value = point.tags[key]
            # Line protocol can't carry empty tag keys or values
            if not key or not value:
                continue
            parts.append(',')
            parts.append(LineProtocolEncoder._escape_name(key, point))
            parts.append('=')
            parts.append(LineProtocolEncoder._escape_name(value, point))

        field_parts = []
        for key, value in point.fields.items():
            if not isinstance(key, str) or not key:
                raise EncodingError(f"Invalid field key {key!r} in '{point.measurement}'", point=point)
            field_parts.append(
                f"{LineProtocolEncoder._escape_name(key, point)}={LineProtocolEncoder.format_field_value(value)}"
            )

        parts.append(' ')
        parts.append(','.join(field_parts))

        timestamp = point.timestamp_in(precision)
        if timestamp is not None:
            parts.append(' ')
            parts.append(str(timestamp))

        return ''.join(parts)

    @staticmethod
    def encode_batch(
        points: Iterable[Point],
        precision: WritePrecision = WritePrecision.NS
    ) -> Tuple[List[str], List[Tuple[Point, EncodingError]]]:
        """
        Encode several points; a bad point does not affect the others

        Returns:
            Tuple of (encoded lines, [(rejected point, error), ...])
        """
        lines = []
        rejected = []

        for point in points:
            try:
                lines.append(LineProtocolEncoder.encode(point, precision))
            except EncodingError as e:
                logger.warning(f"Rejected point: {e}")
                rejected.append((point, e))

        return lines, rejected

    @staticmethod
    def format_field_value(value: FieldValue) -> str:
        """Format a field value with its line protocol type marker"""
        if value.kind is FieldKind.INTEGER:
            return f"{value.value}i"
        if value.kind is FieldKind.FLOAT:
            # repr() is the shortest string that round-trips
            return repr(float(value.value))
        if value.kind is FieldKind.BOOLEAN:
            return 't' if value.value else 'f'
        if value.kind is FieldKind.STRING:
            return f'"{value.value.translate(_STRING_FIELD_ESCAPES)}"'
        raise EncodingError(f"Unknown field kind: {value.kind}")

    @staticmethod
    def _escape_name(name: Any, point: Point) -> str:
        if not isinstance(name, str):
            raise EncodingError(f"Expected a string, got {type(name).__name__}: {name!r}", point=point)
        return name.translate(_NAME_ESCAPES)


class LineProtocolParser:
    """Parser for InfluxDB Line Protocol format"""

    @staticmethod
    def parse_line(line: str) -> Optional[Dict[str, Any]]:
        """
        Parse a single line of InfluxDB Line Protocol

        Args:
            line: Line protocol string

        Returns:
            Dictionary with keys: measurement, tags, fields, timestamp
            (timestamp is the raw integer or None).
            Returns None if line is empty or a comment

        Raises:
            EncodingError: if the line is malformed
        """
        records = LineProtocolParser.parse_lines(line)
        if not records:
            return None
        if len(records) > 1:
            raise EncodingError(f"Expected one record, found {len(records)}: {line!r}")
        return records[0]

    @classmethod
    def parse_lines(cls, text: str) -> List[Dict[str, Any]]:
        """
        Parse multiple lines of line protocol

        Records are separated by newlines; a newline inside a quoted string
        field value does not end a record.

        Raises:
            EncodingError: on the first malformed record
        """
        return [cls._parse_record(raw) for raw in cls.split_records(text)]

    @staticmethod
    def split_records(text: str) -> List[str]:
        """
        Split text into raw records, dropping blank lines and comments

        Quotes are only significant in the field section (after the first
        unescaped space), since tag values may contain bare double quotes.
        """
        records = []
        current = []
        i = 0
        in_fields = False
        in_quotes = False

        while i < len(text):
            char = text[i]
            if char == '\\' and i + 1 < len(text) and not (text[i + 1] == '\n' and not in_quotes):
                current.append(text[i:i + 2])
                i += 2
                continue
            if char == '"' and in_fields:
                in_quotes = not in_quotes
            elif char == ' ' and not in_quotes:
                in_fields = True
            elif char == '\n' and not in_quotes:
                records.append(''.join(current))
                current = []
                in_fields = False
                i += 1
                continue
            current.append(char)
            i += 1

        if in_quotes:
            raise EncodingError(f"Unterminated string field value: {''.join(current)!r}")
        records.append(''.join(current))

        result = []
        for record in records:
            record = record.strip()
            if record and not record.startswith('#'):
                result.append(record)
        return result

    @staticmethod
    def _parse_record(record: str) -> Dict[str, Any]:
        series, rest = LineProtocolParser._split_unescaped(record, ' ', maxsplit=1)
        if not rest:
            raise EncodingError(f"Missing field set: {record!r}")

        measurement, tags = LineProtocolParser._parse_measurement_tags(series, record)
        field_part, timestamp_part = LineProtocolParser._split_fields(rest.lstrip(' '), record)
        fields = LineProtocolParser._parse_fields(field_part, record)

        timestamp = None
        timestamp_part = timestamp_part.strip()
        if timestamp_part:
            try:
                timestamp = int(timestamp_part)
            except ValueError:
                raise EncodingError(f"Invalid timestamp {timestamp_part!r}: {record!r}")

        return {
            'measurement': measurement,
            'tags': tags,
            'fields': fields,
            'timestamp': timestamp
        }

    @staticmethod
    def _split_unescaped(text: str, separator: str, maxsplit: int = -1) -> List[str]:
        """Split on a separator that is not preceded by a backslash"""
        parts = []
        current = []
        i = 0

        while i < len(text):
            if text[i] == '\\' and i + 1 < len(text):
                current.append(text[i:i + 2])
                i += 2
            elif text[i] == separator and (maxsplit < 0 or len(parts) < maxsplit):
                parts.append(''.join(current))
                current = []
                i += 1
            else:
                current.append(text[i])
                i += 1

        parts.append(''.join(current))
        while maxsplit > 0 and len(parts) <= maxsplit:
            parts.append('')
        return parts

    @staticmethod
    def _split_fields(text: str, record: str) -> Tuple[str, str]:
        """Split the field set from the timestamp, respecting quoted strings"""
        i = 0
        in_quotes = False

        while i < len(text):
            if text[i] == '\\' and i + 1 < len(text):
                i += 2
                continue
            if text[i] == '"':
                in_quotes = not in_quotes
            elif text[i] == ' ' and not in_quotes:
                return text[:i], text[i + 1:]
            i += 1

        if in_quotes:
            raise EncodingError(f"Unterminated string field value: {record!r}")
        return text, ''

    @staticmethod
    def _parse_measurement_tags(part: str, record: str) -> Tuple[str, Dict[str, str]]:
        components = LineProtocolParser._split_unescaped(part, ',')

        measurement = LineProtocolParser._unescape_name(components[0])
        if not measurement:
            raise EncodingError(f"Missing measurement: {record!r}")

        tags = {}
        for component in components[1:]:
            key, value = LineProtocolParser._split_unescaped(component, '=', maxsplit=1)
            if not key or not value:
                raise EncodingError(f"Invalid tag {component!r}: {record!r}")
            tags[LineProtocolParser._unescape_name(key)] = LineProtocolParser._unescape_name(value)

        return measurement, tags

    @staticmethod
    def _parse_fields(part: str, record: str) -> Dict[str, Union[float, int, str, bool]]:
        fields = {}

        for field_part in LineProtocolParser._split_field_set(part):
            key, value = LineProtocolParser._split_unescaped(field_part, '=', maxsplit=1)
            if not key or not value:
                raise EncodingError(f"Invalid field {field_part!r}: {record!r}")
            fields[LineProtocolParser._unescape_name(key)] = LineProtocolParser._parse_field_value(value, record)

        if not fields:
            raise EncodingError(f"No fields: {record!r}")
        return fields

    @staticmethod
    def _split_field_set(text: str) -> List[str]:
        """Split on unescaped commas outside quoted strings"""
        parts = []
        current = []
        i = 0
        in_quotes = False

        while i < len(text):
            if text[i] == '\\' and i + 1 < len(text):
                current.append(text[i:i + 2])
                i += 2
            elif text[i] == '"':
                in_quotes = not in_quotes
                current.append(text[i])
                i += 1
            elif text[i] == ',' and not in_quotes:
                parts.append(''.join(current))
                current = []
                i += 1
            else:
                current.append(text[i])
                i += 1

        parts.append(''.join(current))
        return parts

    @staticmethod
    def _parse_field_value(value: str, record: str) -> Union[float, int, str, bool]:
        """
        Parse field value based on InfluxDB type indicators

        Type indicators:
            - Integer: ends with 'i' (e.g., 123i), unsigned with 'u'
            - Float: numeric without suffix (e.g., 123.45, 1e+16)
            - String: wrapped in quotes (e.g., "hello")
            - Boolean: t, T, true, True, TRUE, f, F, false, False, FALSE
        """
        if value.startswith('"'):
            if len(value) < 2 or not value.endswith('"'):
                raise EncodingError(f"Malformed quoted string {value!r}: {record!r}")
            return LineProtocolParser._unescape_string(value[1:-1])

        if value.lower() in _TRUE_VALUES:
            return True
        if value.lower() in _FALSE_VALUES:
            return False

        try:
            if value.endswith('i') or value.endswith('u'):
                return int(value[:-1])
            return float(value)
        except ValueError:
            raise EncodingError(f"Invalid field value {value!r}: {record!r}")

    @staticmethod
    def _unescape_name(text: str) -> str:
        result = []
        i = 0
        while i < len(text):
            if text[i] == '\\' and i + 1 < len(text) and text[i + 1] in _NAME_UNESCAPES:
                result.append(_NAME_UNESCAPES[text[i + 1]])
                i += 2
            else:
                result.append(text[i])
                i += 1
        return ''.join(result)

    @staticmethod
    def _unescape_string(text: str) -> str:
        result = []
        i = 0
        while i < len(text):
            if text[i] == '\\' and i + 1 < len(text) and text[i + 1] in ('"', '\\'):
                result.append(text[i + 1])
                i += 2
            else:
                result.append(text[i])
                i += 1
        return ''.join(result)
