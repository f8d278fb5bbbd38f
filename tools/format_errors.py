#!/usr/bin/env python3
"""
format_errors.py - Error taxonomy for binary format schemas and codecs

Every error raised by the schema loader, the type registry and the
decode/encode engines derives from FormatError, which is a ValueError so
callers that already guard codec calls with ``except ValueError`` keep
working.

    FormatError
    +-- SchemaError            (load time, fatal)
    |   +-- InvalidFieldSpec
    |   +-- DuplicateFieldId
    |   +-- UnknownType
    |   +-- CyclicTypeReference
    |   +-- ExpressionSyntaxError
    |   +-- ExpressionTypeError
    |   +-- UnknownIdentifier
    +-- DecodeError
    |   +-- PrematureEof
    |   +-- UnboundIdentifier
    |   +-- InvalidRepeatCount
    +-- EncodeError
        +-- MissingField
        +-- ValueShapeError
        +-- RepeatCountMismatch
"""

from typing import Any, Dict, Optional


class FormatError(ValueError):
    """Base class for structured schema and codec errors."""

    kind = 'format_error'

    def __init__(self, message: str, field: Optional[str] = None,
                 type_name: Optional[str] = None):
        self.message = message
        self.field = field
        self.type_name = type_name
        super().__init__(self._render())

    def _render(self) -> str:
        where = []
        if self.type_name:
            where.append(f"type '{self.type_name}'")
        if self.field:
            where.append(f"field '{self.field}'")
        if where:
            return f"{', '.join(where)}: {self.message}"
        return self.message

    def annotate(self, field: Optional[str], type_name: Optional[str]) -> 'FormatError':
        """Fill in the location if the raiser could not know it."""
        if self.field is None and self.type_name is None:
            self.field = field
            self.type_name = type_name
            self.args = (self._render(),)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.kind,
            'message': self.message,
            'field': self.field,
            'type': self.type_name,
        }


# =============================================================================
# Schema errors
# =============================================================================

class SchemaError(FormatError):
    kind = 'schema_error'


class InvalidFieldSpec(SchemaError):
    kind = 'invalid_field_spec'


class DuplicateFieldId(SchemaError):
    kind = 'duplicate_field_id'


class UnknownType(SchemaError):
    kind = 'unknown_type'


class CyclicTypeReference(SchemaError):
    """A composite type contains itself, directly or indirectly."""

    kind = 'cyclic_type_reference'

    def __init__(self, cycle, field: Optional[str] = None):
        self.cycle = list(cycle)
        super().__init__(f"cyclic type reference: {' -> '.join(self.cycle)}",
                         field=field, type_name=self.cycle[0])


class ExpressionSyntaxError(SchemaError):
    kind = 'expression_syntax_error'

    def __init__(self, message: str, text: str = '', column: int = 0):
        self.text = text
        self.column = column
        if text:
            message = f"{message} at column {column} in '{text}'"
        super().__init__(message)


class ExpressionTypeError(SchemaError):
    kind = 'expression_type_error'


class UnknownIdentifier(SchemaError):
    """An expression names a field that is not decoded before it."""

    kind = 'unknown_identifier'


# =============================================================================
# Decode errors
# =============================================================================

class DecodeError(FormatError):
    kind = 'decode_error'


class PrematureEof(DecodeError):
    kind = 'premature_eof'

    def __init__(self, needed: int, available: int, offset: int,
                 field: Optional[str] = None, type_name: Optional[str] = None):
        self.needed = needed
        self.available = available
        self.offset = offset
        super().__init__(
            f"need {needed} bytes at offset {offset}, only {available} available",
            field=field, type_name=type_name)


class UnboundIdentifier(DecodeError):
    kind = 'unbound_identifier'

    def __init__(self, name: str, reason: str = 'not in scope'):
        self.name = name
        super().__init__(f"identifier '{name}' is {reason}")


class InvalidRepeatCount(DecodeError):
    kind = 'invalid_repeat_count'


# =============================================================================
# Encode errors
# =============================================================================

class EncodeError(FormatError):
    kind = 'encode_error'


class MissingField(EncodeError):
    kind = 'missing_field'


class ValueShapeError(EncodeError):
    kind = 'value_shape_error'


class RepeatCountMismatch(EncodeError):
    kind = 'repeat_count_mismatch'
