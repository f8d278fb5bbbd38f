#!/usr/bin/env python3
"""
format_codec.py - Runtime decoder/encoder driven by a format schema

Interprets the Schema IR directly: decode walks each record's fields in
declared order, consulting conditions and repeat counts through a Context;
encode walks the same fields in the same order and re-derives every
condition from the values it has already written.

Usage:
    from format_codec import FormatCodec

    codec = FormatCodec.from_file('schemas/save.yaml')
    result = codec.decode(raw_bytes)
    print(result.data['save_version'], result.bytes_consumed)

    payload = codec.encode(result.data).payload
    assert codec.decode(payload).data == result.data

Decode and encode are all-or-nothing: the first error aborts the call with
a FormatError naming the field and type involved.
"""

import io
import logging
import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from format_context import Context
from format_errors import (
    FormatError, MissingField, PrematureEof, RepeatCountMismatch, ValueShapeError,
)
from format_expr import Name, evaluate_condition, evaluate_count
from format_registry import TypeRegistry
from format_schema import (
    FieldKind, FieldSpec, Primitive, Schema, TypeDef, load_format, load_format_file,
)

logger = logging.getLogger(__name__)


@dataclass
class DecodeResult:
    """Result of decoding a payload."""
    data: Dict[str, Any]
    bytes_consumed: int
    trailing: bytes = b''


@dataclass
class EncodeResult:
    """Result of encoding a record."""
    payload: bytes

    def __len__(self) -> int:
        return len(self.payload)


class ByteReader:
    """Wraps a binary stream and tracks the read offset."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.offset = 0

    def read_exact(self, size: int, spec: FieldSpec, typedef: TypeDef) -> bytes:
        data = self.stream.read(size)
        if len(data) < size:
            raise PrematureEof(size, len(data), self.offset,
                               field=spec.id, type_name=typedef.label)
        self.offset += size
        return data


class FormatCodec:
    """
    Interpreter over a validated Schema IR.

    A codec holds no per-call state: every decode/encode builds its own
    Context tree, so one instance can serve concurrent calls.
    """

    def __init__(self, schema: Schema):
        self.schema = schema
        self.registry = TypeRegistry(schema)
        self.endian = schema.endian
        self._structs: Dict[str, struct.Struct] = {}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'FormatCodec':
        return cls(load_format_file(path))

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> 'FormatCodec':
        return cls(load_format(doc))

    def _struct(self, primitive: Primitive) -> struct.Struct:
        packer = self._structs.get(primitive.name)
        if packer is None:
            packer = primitive.struct_for(self.endian)
            self._structs[primitive.name] = packer
        return packer

    # =========================================================================
    # Decode
    # =========================================================================

    def decode(self, payload: bytes) -> DecodeResult:
        """
        Decode a complete payload against the root type.

        Bytes left over after the root record are returned in ``trailing``.
        """
        stream = io.BytesIO(payload)
        reader = ByteReader(stream)
        data = self._decode_type(self.schema.root, reader, Context())
        return DecodeResult(data=data, bytes_consumed=reader.offset,
                            trailing=payload[reader.offset:])

    def decode_stream(self, stream: BinaryIO) -> Dict[str, Any]:
        """Decode one root record from a stream, leaving it after the record."""
        return self._decode_type(self.schema.root, ByteReader(stream), Context())

    def decode_record(self, typedef: Union[TypeDef, str, None], stream: BinaryIO,
                      context: Optional[Context] = None) -> Tuple[Dict[str, Any], Context]:
        """
        Decode one record of ``typedef`` from ``stream``.

        A named type decoded with a parent context sees that context as its
        ``_root`` chain.  Returns the record and the record's own Context.
        """
        if not isinstance(typedef, TypeDef):
            typedef = self.registry.lookup(typedef)
        scope = Context() if context is None else context.child()
        value = self._decode_type(typedef, ByteReader(stream), scope)
        return value, scope

    def _decode_type(self, typedef: TypeDef, reader: ByteReader,
                     context: Context) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for spec in typedef.fields:
            try:
                value = self._decode_field(spec, typedef, reader, context)
            except FormatError as e:
                raise e.annotate(spec.id, typedef.label)
            record[spec.id] = value
            context.bind(spec.id, value)
        return record

    def _decode_field(self, spec: FieldSpec, typedef: TypeDef, reader: ByteReader,
                      context: Context) -> Any:
        kind = spec.kind
        if kind is FieldKind.OPTIONAL:
            if evaluate_condition(spec.condition, context):
                return self._decode_present(spec, typedef, reader, context)
            if spec.advance_if_absent:
                width = self.registry.fixed_width(spec)
                reader.read_exact(width, spec, typedef)
                return self.registry.zero_value(spec)
            return None
        if kind is FieldKind.REPEATED:
            return self._decode_present(spec, typedef, reader, context)
        if kind is FieldKind.PRIMITIVE or kind is FieldKind.COMPOSITE:
            return self._decode_element(spec, typedef, reader, context)
        raise ValueError(f"Unknown field kind: {kind}")

    def _decode_present(self, spec: FieldSpec, typedef: TypeDef, reader: ByteReader,
                        context: Context) -> Any:
        if spec.repeat is None:
            return self._decode_element(spec, typedef, reader, context)
        count = evaluate_count(spec.repeat, context)
        return [self._decode_element(spec, typedef, reader, context)
                for _ in range(count)]

    def _decode_element(self, spec: FieldSpec, typedef: TypeDef, reader: ByteReader,
                        context: Context) -> Any:
        kind = spec.element_kind
        if kind is FieldKind.PRIMITIVE:
            primitive = spec.type.primitive
            data = reader.read_exact(primitive.size, spec, typedef)
            value = self._struct(primitive).unpack(data)[0]
            if primitive.domain == 'bool':
                return value != 0
            return value
        if kind is FieldKind.COMPOSITE:
            nested = self.registry.lookup(spec.type.name)
            return self._decode_type(nested, reader, context.child())
        raise ValueError(f"Unknown element kind: {kind}")

    # =========================================================================
    # Encode
    # =========================================================================

    def encode(self, data: Mapping) -> EncodeResult:
        """Encode a root record to bytes."""
        sink = io.BytesIO()
        self._encode_type(self.schema.root, data, sink, Context())
        return EncodeResult(payload=sink.getvalue())

    def encode_stream(self, data: Mapping, sink: BinaryIO) -> None:
        """Encode a root record into a writable stream."""
        self._encode_type(self.schema.root, data, sink, Context())

    def encode_record(self, typedef: Union[TypeDef, str, None], value: Mapping,
                      context: Optional[Context] = None) -> bytes:
        sink = io.BytesIO()
        self.encode_to(typedef, value, sink, context)
        return sink.getvalue()

    def encode_to(self, typedef: Union[TypeDef, str, None], value: Mapping,
                  sink: BinaryIO, context: Optional[Context] = None) -> Context:
        """Write one record of ``typedef``; returns the record's Context."""
        if not isinstance(typedef, TypeDef):
            typedef = self.registry.lookup(typedef)
        scope = Context() if context is None else context.child()
        self._encode_type(typedef, value, sink, scope)
        return scope

    def _derived_counts(self, typedef: TypeDef, record: Mapping) -> Dict[str, int]:
        """
        Count fields re-derived from the sequences they govern.

        Only same-record counts can be rewritten; root-qualified and literal
        counts are checked against the sequence length when it is written.
        """
        counts: Dict[str, int] = {}
        owners: Dict[str, str] = {}
        for spec in typedef.fields:
            expr = spec.repeat
            if not isinstance(expr, Name) or expr.root:
                continue
            items = record.get(spec.id)
            if items is None:
                continue
            if not _is_sequence(items):
                raise ValueShapeError(f"expected a sequence, got {type(items).__name__}",
                                      field=spec.id, type_name=typedef.label)
            previous = counts.get(expr.ident)
            if previous is not None and previous != len(items):
                raise RepeatCountMismatch(
                    f"'{spec.id}' has {len(items)} items but '{owners[expr.ident]}' "
                    f"has {previous}; both are counted by '{expr.ident}'",
                    field=spec.id, type_name=typedef.label)
            counts[expr.ident] = len(items)
            owners[expr.ident] = spec.id
        return counts

    def _encode_type(self, typedef: TypeDef, record: Any, sink: BinaryIO,
                     context: Context) -> Dict[str, Any]:
        if not isinstance(record, Mapping):
            raise ValueShapeError(f"expected a mapping for a {typedef.label} record, "
                                  f"got {type(record).__name__}", type_name=typedef.label)
        counts = self._derived_counts(typedef, record)
        written: Dict[str, Any] = {}
        for spec in typedef.fields:
            if spec.id in counts:
                value = counts[spec.id]
                supplied = record.get(spec.id)
                if supplied is not None and supplied != value:
                    logger.debug("%s.%s: writing derived count %d instead of %r",
                                 typedef.label, spec.id, value, supplied)
            else:
                value = record.get(spec.id)
            try:
                value = self._encode_field(spec, typedef, value, sink, context)
            except FormatError as e:
                raise e.annotate(spec.id, typedef.label)
            written[spec.id] = value
            context.bind(spec.id, value)
        return written

    def _encode_field(self, spec: FieldSpec, typedef: TypeDef, value: Any,
                      sink: BinaryIO, context: Context) -> Any:
        kind = spec.kind
        if kind is FieldKind.OPTIONAL:
            if evaluate_condition(spec.condition, context):
                return self._encode_present(spec, typedef, value, sink, context)
            if spec.advance_if_absent:
                sink.write(bytes(self.registry.fixed_width(spec)))
                return self.registry.zero_value(spec)
            if value is not None:
                logger.debug("%s.%s: condition false, dropping supplied value",
                             typedef.label, spec.id)
            return None
        if kind is FieldKind.REPEATED:
            return self._encode_present(spec, typedef, value, sink, context)
        if kind is FieldKind.PRIMITIVE or kind is FieldKind.COMPOSITE:
            return self._encode_element(spec, typedef, value, sink, context)
        raise ValueError(f"Unknown field kind: {kind}")

    def _encode_present(self, spec: FieldSpec, typedef: TypeDef, value: Any,
                        sink: BinaryIO, context: Context) -> Any:
        if spec.repeat is None:
            return self._encode_element(spec, typedef, value, sink, context)
        count = evaluate_count(spec.repeat, context)
        if value is None:
            raise MissingField("required sequence is missing")
        if not _is_sequence(value):
            raise ValueShapeError(f"expected a sequence, got {type(value).__name__}")
        if len(value) != count:
            raise RepeatCountMismatch(
                f"sequence has {len(value)} items but '{spec.repeat}' is {count}")
        return [self._encode_element(spec, typedef, item, sink, context)
                for item in value]

    def _encode_element(self, spec: FieldSpec, typedef: TypeDef, value: Any,
                        sink: BinaryIO, context: Context) -> Any:
        if value is None:
            raise MissingField("required value is missing")
        kind = spec.element_kind
        if kind is FieldKind.PRIMITIVE:
            value = self._coerce(spec.type.primitive, value)
            sink.write(self._pack(spec.type.primitive, value))
            return value
        if kind is FieldKind.COMPOSITE:
            nested = self.registry.lookup(spec.type.name)
            return self._encode_type(nested, value, sink, context.child())
        raise ValueError(f"Unknown element kind: {kind}")

    def _coerce(self, primitive: Primitive, value: Any) -> Any:
        if primitive.domain == 'bool':
            if not isinstance(value, (bool, int)):
                raise ValueShapeError(f"expected bool, got {type(value).__name__}")
            return bool(value)
        if primitive.domain == 'int':
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueShapeError(f"expected int for {primitive.name}, "
                                      f"got {type(value).__name__}")
            return value
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueShapeError(f"expected float for {primitive.name}, "
                                  f"got {type(value).__name__}")
        try:
            return float(value)
        except OverflowError as e:
            raise ValueShapeError(f"{value!r} does not fit {primitive.name}: {e}")

    def _pack(self, primitive: Primitive, value: Any) -> bytes:
        raw = int(value) if primitive.domain == 'bool' else value
        try:
            return self._struct(primitive).pack(raw)
        except (struct.error, OverflowError) as e:
            raise ValueShapeError(f"{value!r} does not fit {primitive.name}: {e}")

    # =========================================================================
    # Layout
    # =========================================================================

    def layout(self, data: Mapping, typedef: Union[TypeDef, str, None] = None,
               context: Optional[Context] = None) -> List[Tuple[str, int, int]]:
        """
        Field offsets of an encoded record: (path, offset, width).

        Absent skip-policy fields are listed with width 0.  Composite fields
        are expanded into their leaf fields.
        """
        if not isinstance(typedef, TypeDef):
            typedef = self.registry.lookup(typedef)
        scope = Context() if context is None else context.child()
        rows: List[Tuple[str, int, int]] = []
        self._layout_type(typedef, data, _CountingSink(), scope, '', rows)
        return rows

    def _layout_type(self, typedef: TypeDef, record: Any, sink: '_CountingSink',
                     context: Context, prefix: str, rows: List[Tuple[str, int, int]]) -> None:
        if not isinstance(record, Mapping):
            raise ValueShapeError(f"expected a mapping for a {typedef.label} record, "
                                  f"got {type(record).__name__}", type_name=typedef.label)
        counts = self._derived_counts(typedef, record)
        for spec in typedef.fields:
            value = counts.get(spec.id, record.get(spec.id))
            path = f"{prefix}{spec.id}"
            start = sink.offset
            try:
                if spec.type.is_composite and value is not None and spec.kind is not FieldKind.OPTIONAL:
                    nested = self.registry.lookup(spec.type.name)
                    items = [value]
                    if spec.repeat is not None:
                        items = value
                        count = evaluate_count(spec.repeat, context)
                        if not _is_sequence(items) or len(items) != count:
                            raise RepeatCountMismatch(
                                f"expected {count} items for '{spec.repeat}'",
                                field=spec.id, type_name=typedef.label)
                    for i, item in enumerate(items):
                        label = f"{path}[{i}]." if spec.repeat is not None else f"{path}."
                        self._layout_type(nested, item, sink, context.child(), label, rows)
                    written = value
                else:
                    written = self._encode_field(spec, typedef, value, sink, context)
                    rows.append((path, start, sink.offset - start))
            except FormatError as e:
                raise e.annotate(spec.id, typedef.label)
            context.bind(spec.id, written)


class _CountingSink:
    """Write target that only counts bytes."""

    def __init__(self):
        self.offset = 0

    def write(self, data: bytes) -> int:
        self.offset += len(data)
        return len(data)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def decode_payload(schema: Union[Schema, Dict[str, Any]], payload: bytes) -> Dict[str, Any]:
    """Convenience function to decode a payload."""
    if not isinstance(schema, Schema):
        schema = load_format(schema)
    return FormatCodec(schema).decode(payload).data


def encode_payload(schema: Union[Schema, Dict[str, Any]], data: Mapping) -> bytes:
    """Convenience function to encode a record."""
    if not isinstance(schema, Schema):
        schema = load_format(schema)
    return FormatCodec(schema).encode(data).payload
