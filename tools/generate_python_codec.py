#!/usr/bin/env python3
"""
generate_python_codec.py - Generate a standalone Python codec from a format schema

Usage:
    python tools/generate_python_codec.py schemas/save.yaml -o save_codec.py

Generates one module with:
    - _read_<Type> / _write_<Type>  - one pair per composite type, in
                                      dependency order
    - _read__root / _write__root    - the root record
    - decode(payload) -> dict, decode_stream(stream) -> dict
    - encode(record) -> bytes, encode_stream(record, stream)

The generated code only imports struct, io and format_errors, and produces
exactly the bytes and records FormatCodec produces for the same schema.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

sys.path.insert(0, str(Path(__file__).parent))
from format_expr import Name, to_python
from format_registry import TypeRegistry
from format_schema import FieldKind, FieldSpec, Schema, TypeDef, load_format_file

logger = logging.getLogger(__name__)


# Helper names must not start with _read_ or _write_; those belong to the
# per-type functions and any identifier can be a type name.
RUNTIME = '''
class _Reader:
    def __init__(self, stream):
        self.stream = stream
        self.offset = 0

    def read(self, size, field, type_name):
        data = self.stream.read(size)
        if len(data) < size:
            raise PrematureEof(size, len(data), self.offset,
                               field=field, type_name=type_name)
        self.offset += size
        return data


def _ref(scope, name, label=None):
    if name not in scope:
        raise UnboundIdentifier(label or name)
    value = scope[name]
    if value is None:
        raise UnboundIdentifier(label or name, 'not present in this record')
    return value


def _count(value, expr):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRepeatCount(f"repeat count '{expr}' evaluated to {value!r}, not an integer")
    if value < 0:
        raise InvalidRepeatCount(f"repeat count '{expr}' evaluated to negative value {value}")
    return value


def _is_sequence(value):
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _unpack_value(reader, packer, domain, field, type_name):
    value = packer.unpack(reader.read(packer.size, field, type_name))[0]
    if domain == 'bool':
        return value != 0
    return value


def _require(value):
    if value is None:
        raise MissingField('required value is missing')
    return value


def _record(record, type_name):
    if not isinstance(record, Mapping):
        raise ValueShapeError(f"expected a mapping for a {type_name} record, "
                              f"got {type(record).__name__}", type_name=type_name)
    return record


def _items(value, count, expr):
    if value is None:
        raise MissingField('required sequence is missing')
    if not _is_sequence(value):
        raise ValueShapeError(f"expected a sequence, got {type(value).__name__}")
    if len(value) != count:
        raise RepeatCountMismatch(f"sequence has {len(value)} items but '{expr}' is {count}")
    return value


def _derive_counts(record, pairs, type_name):
    counts = {}
    owners = {}
    for field, count_field in pairs:
        items = record.get(field)
        if items is None:
            continue
        if not _is_sequence(items):
            raise ValueShapeError(f"expected a sequence, got {type(items).__name__}",
                                  field=field, type_name=type_name)
        previous = counts.get(count_field)
        if previous is not None and previous != len(items):
            raise RepeatCountMismatch(
                f"'{field}' has {len(items)} items but '{owners[count_field]}' "
                f"has {previous}; both are counted by '{count_field}'",
                field=field, type_name=type_name)
        counts[count_field] = len(items)
        owners[count_field] = field
    return counts


def _pack_value(writer, packer, domain, value, type_label):
    value = _require(value)
    if domain == 'bool':
        if not isinstance(value, (bool, int)):
            raise ValueShapeError(f"expected bool, got {type(value).__name__}")
        value = bool(value)
        raw = int(value)
    elif domain == 'int':
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueShapeError(f"expected int for {type_label}, got {type(value).__name__}")
        raw = value
    else:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueShapeError(f"expected float for {type_label}, got {type(value).__name__}")
        try:
            value = float(value)
        except OverflowError as e:
            raise ValueShapeError(f"{value!r} does not fit {type_label}: {e}")
        raw = value
    try:
        writer.write(packer.pack(raw))
    except (struct.error, OverflowError) as e:
        raise ValueShapeError(f"{value!r} does not fit {type_label}: {e}")
    return value
'''


def func_name(direction: str, typedef: TypeDef) -> str:
    return f"_{direction}_{typedef.label}"


def packer_name(type_name: str) -> str:
    return f"_P_{type_name}"


class PythonCodecGenerator:
    """Generates Python codec source from a validated schema."""

    def __init__(self, schema: Schema, module_name: Optional[str] = None):
        self.schema = schema
        self.registry = TypeRegistry(schema)
        self.module_name = module_name or f"{schema.name}_codec"

    def generate(self, timestamp: bool = True) -> str:
        """Return the complete module source."""
        lines = self._header(timestamp)
        lines.extend(self._packers())
        lines.append(RUNTIME.rstrip())
        lines.append('')
        for typedef in self.registry.order:
            lines.append('')
            lines.extend(self._read_function(typedef))
            lines.append('')
            lines.append('')
            lines.extend(self._write_function(typedef))
            lines.append('')
        lines.extend(self._entry_points())
        logger.debug("generated %s: %d types, %d lines", self.module_name,
                     len(self.registry.order), len(lines))
        return '\n'.join(lines) + '\n'

    # -------------------------------------------------------------------------
    # Module scaffolding
    # -------------------------------------------------------------------------

    def _header(self, timestamp: bool) -> List[str]:
        lines = [
            f'"""',
            f'{self.module_name}.py - Generated codec for the {self.schema.name!r} format',
            f'',
            f'Generated by: generate_python_codec.py',
        ]
        if timestamp:
            lines.append(f'Generated at: {datetime.now().isoformat()}')
        lines.extend([
            f'',
            f'DO NOT EDIT - Regenerate from schema',
            f'"""',
            f'',
            f'import io',
            f'import struct',
            f'from collections.abc import Mapping, Sequence',
            f'',
            f'from format_errors import (',
            f'    FormatError, InvalidRepeatCount, MissingField, PrematureEof,',
            f'    RepeatCountMismatch, UnboundIdentifier, ValueShapeError,',
            f')',
            f'',
        ])
        return lines

    def _packers(self) -> List[str]:
        used = {}
        for typedef in self.registry.order:
            for spec in typedef.fields:
                primitive = spec.type.primitive
                if primitive is not None:
                    used[primitive.name] = primitive
        lines = []
        for name in sorted(used):
            fmt = self.schema.endian.prefix + used[name].fmt
            lines.append(f"{packer_name(name)} = struct.Struct({fmt!r})")
        lines.append('')
        return lines

    def _entry_points(self) -> List[str]:
        root = self.registry.root
        return [
            '',
            'def decode(payload):',
            '    """Decode a payload; returns the root record."""',
            '    return decode_stream(io.BytesIO(payload))',
            '',
            '',
            'def decode_stream(stream):',
            f'    return {func_name("read", root)}(_Reader(stream))',
            '',
            '',
            'def encode(record):',
            '    """Encode a root record to bytes."""',
            '    sink = io.BytesIO()',
            '    encode_stream(record, sink)',
            '    return sink.getvalue()',
            '',
            '',
            'def encode_stream(record, stream):',
            f'    {func_name("write", root)}(stream, record)',
        ]

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    def _read_element(self, spec: FieldSpec) -> str:
        kind = spec.element_kind
        if kind is FieldKind.PRIMITIVE:
            primitive = spec.type.primitive
            return (f"_unpack_value(reader, {packer_name(primitive.name)}, "
                    f"{primitive.domain!r}, field, TYPE)")
        if kind is FieldKind.COMPOSITE:
            nested = self.registry.lookup(spec.type.name)
            return f"{func_name('read', nested)}(reader, _root)"
        raise ValueError(f"Unknown element kind: {kind}")

    def _read_present(self, spec: FieldSpec) -> str:
        element = self._read_element(spec)
        if spec.repeat is None:
            return element
        count = to_python(spec.repeat, 'record', '_root')
        return f"[{element} for _ in range(_count({count}, {str(spec.repeat)!r}))]"

    def _read_field(self, spec: FieldSpec) -> List[str]:
        target = f"record[{spec.id!r}]"
        lines = [f"field = {spec.id!r}"]
        kind = spec.kind
        if kind is FieldKind.OPTIONAL:
            condition = to_python(spec.condition, 'record', '_root')
            lines.append(f"if {condition}:")
            lines.append(f"    {target} = {self._read_present(spec)}")
            lines.append("else:")
            if spec.advance_if_absent:
                width = self.registry.fixed_width(spec)
                lines.append(f"    reader.read({width}, field, TYPE)")
                lines.append(f"    {target} = {self.registry.zero_value(spec)!r}")
            else:
                lines.append(f"    {target} = None")
        elif kind is FieldKind.REPEATED:
            lines.append(f"{target} = {self._read_present(spec)}")
        elif kind is FieldKind.PRIMITIVE or kind is FieldKind.COMPOSITE:
            lines.append(f"{target} = {self._read_element(spec)}")
        else:
            raise ValueError(f"Unknown field kind: {kind}")
        return lines

    def _read_function(self, typedef: TypeDef) -> List[str]:
        name = func_name('read', typedef)
        if typedef.is_root:
            lines = [f"def {name}(reader):", "    record = {}", "    _root = record"]
        else:
            lines = [f"def {name}(reader, _root):", "    record = {}"]
        lines.append(f"    TYPE = {typedef.label!r}")
        if not typedef.fields:
            lines.append("    return record")
            return lines
        lines.append("    field = None")
        lines.append("    try:")
        for spec in typedef.fields:
            lines.extend(f"        {line}" for line in self._read_field(spec))
        lines.extend([
            "    except FormatError as e:",
            "        raise e.annotate(field, TYPE)",
            "    return record",
        ])
        return lines

    # -------------------------------------------------------------------------
    # Encode
    # -------------------------------------------------------------------------

    def _count_pairs(self, typedef: TypeDef) -> List[tuple]:
        pairs = []
        for spec in typedef.fields:
            if isinstance(spec.repeat, Name) and not spec.repeat.root:
                pairs.append((spec.id, spec.repeat.ident))
        return pairs

    def _write_element(self, spec: FieldSpec, value: str) -> str:
        kind = spec.element_kind
        if kind is FieldKind.PRIMITIVE:
            primitive = spec.type.primitive
            return (f"_pack_value(writer, {packer_name(primitive.name)}, "
                    f"{primitive.domain!r}, {value}, {primitive.name!r})")
        if kind is FieldKind.COMPOSITE:
            nested = self.registry.lookup(spec.type.name)
            return f"{func_name('write', nested)}(writer, _require({value}), _root)"
        raise ValueError(f"Unknown element kind: {kind}")

    def _write_present(self, spec: FieldSpec) -> str:
        if spec.repeat is None:
            return self._write_element(spec, 'value')
        count = to_python(spec.repeat, 'scope', '_root')
        element = self._write_element(spec, 'item')
        expr = str(spec.repeat)
        return (f"[{element} for item in "
                f"_items(value, _count({count}, {expr!r}), {expr!r})]")

    def _write_field(self, spec: FieldSpec, derived: set) -> List[str]:
        lines = [f"field = {spec.id!r}"]
        if spec.id in derived:
            lines.append(f"value = counts[field] if field in counts else record.get(field)")
        else:
            lines.append(f"value = record.get(field)")
        kind = spec.kind
        if kind is FieldKind.OPTIONAL:
            condition = to_python(spec.condition, 'scope', '_root')
            lines.append(f"if {condition}:")
            lines.append(f"    value = {self._write_present(spec)}")
            lines.append("else:")
            if spec.advance_if_absent:
                width = self.registry.fixed_width(spec)
                lines.append(f"    writer.write(bytes({width}))")
                lines.append(f"    value = {self.registry.zero_value(spec)!r}")
            else:
                lines.append("    value = None")
        elif kind is FieldKind.REPEATED:
            lines.append(f"value = {self._write_present(spec)}")
        elif kind is FieldKind.PRIMITIVE or kind is FieldKind.COMPOSITE:
            lines.append(f"value = {self._write_element(spec, 'value')}")
        else:
            raise ValueError(f"Unknown field kind: {kind}")
        lines.append("scope[field] = value")
        return lines

    def _write_function(self, typedef: TypeDef) -> List[str]:
        name = func_name('write', typedef)
        if typedef.is_root:
            lines = [f"def {name}(writer, record):", "    scope = {}", "    _root = scope"]
        else:
            lines = [f"def {name}(writer, record, _root):", "    scope = {}"]
        lines.append(f"    TYPE = {typedef.label!r}")
        lines.append("    _record(record, TYPE)")
        if not typedef.fields:
            lines.append("    return scope")
            return lines
        pairs = self._count_pairs(typedef)
        lines.append(f"    counts = _derive_counts(record, {tuple(pairs)!r}, TYPE)")
        lines.append("    field = None")
        lines.append("    try:")
        derived = {count_field for _, count_field in pairs}
        for spec in typedef.fields:
            lines.extend(f"        {line}" for line in self._write_field(spec, derived))
        lines.extend([
            "    except FormatError as e:",
            "        raise e.annotate(field, TYPE)",
            "    return scope",
        ])
        return lines


def generate_codec_source(schema: Schema, module_name: Optional[str] = None,
                          timestamp: bool = True) -> str:
    return PythonCodecGenerator(schema, module_name).generate(timestamp=timestamp)


def main():
    parser = argparse.ArgumentParser(
        description='Generate a standalone Python codec from a format schema'
    )
    parser.add_argument('schema', help='Path to schema YAML file')
    parser.add_argument('-o', '--output', help='Output .py file (default: stdout)')
    parser.add_argument('--module-name', help='Module name used in the docstring')
    parser.add_argument('--no-timestamp', action='store_true',
                        help='Omit the generation timestamp')
    args = parser.parse_args()

    schema = load_format_file(args.schema)
    source = generate_codec_source(schema, args.module_name,
                                   timestamp=not args.no_timestamp)

    if args.output:
        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, 'w') as f:
            f.write(source)
        print(f"Generated: {out_path}")
    else:
        print(source, end='')


if __name__ == '__main__':
    main()
