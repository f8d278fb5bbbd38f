#!/usr/bin/env python3
"""
format_schema.py - Schema IR for versioned binary record formats

Loads a format description (YAML or an already-parsed dict) into an
immutable intermediate representation shared by the interpreter
(format_codec.py) and the source generator (generate_python_codec.py).

Usage:
    from format_schema import load_format_file

    schema = load_format_file('schemas/save.yaml')
    for field_spec in schema.root.fields:
        print(field_spec.id, field_spec.kind)

Schema document:

    meta:
      endian: be                # be | le (default le)
      id: save                  # optional name
    types:
      Upgrade:
        - id: id
          type: u32
        - id: active
          type: bool
          if: _root.save_version >= 1
    items:
      - id: save_version
        type: u16
      - id: season_n
        type: Option<u16>       # skip policy: absent fields take no bytes
        if: save_version >= 24
      - id: egg_rng_state
        type: u32
        if: save_version >= 15
        advance_if_false: true  # absent fields still occupy their width
      - id: upgrade_count
        type: u16
      - id: upgrades
        type: Upgrade
        repeat: Count(upgrade_count)
"""

import re
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from format_errors import DuplicateFieldId, FormatError, InvalidFieldSpec, SchemaError
from format_expr import ROOT, BOOL_OPS, Expr, parse_expr


class Endian(Enum):
    BIG = 'big'
    LITTLE = 'little'

    @property
    def prefix(self) -> str:
        """struct byte-order prefix."""
        return '>' if self is Endian.BIG else '<'


ENDIAN_NAMES = {
    'be': Endian.BIG, 'big': Endian.BIG,
    'le': Endian.LITTLE, 'little': Endian.LITTLE,
}


@dataclass(frozen=True)
class Primitive:
    """Fixed-width scalar type."""
    name: str
    size: int
    domain: str  # 'int' | 'float' | 'bool'
    fmt: str     # struct format character

    @property
    def zero(self) -> Union[int, float, bool]:
        if self.domain == 'bool':
            return False
        if self.domain == 'float':
            return 0.0
        return 0

    def struct_for(self, endian: Endian) -> struct.Struct:
        return struct.Struct(endian.prefix + self.fmt)


PRIMITIVES: Dict[str, Primitive] = {
    p.name: p for p in (
        Primitive('u8', 1, 'int', 'B'),
        Primitive('u16', 2, 'int', 'H'),
        Primitive('u32', 4, 'int', 'I'),
        Primitive('u64', 8, 'int', 'Q'),
        Primitive('i8', 1, 'int', 'b'),
        Primitive('i16', 2, 'int', 'h'),
        Primitive('i32', 4, 'int', 'i'),
        Primitive('i64', 8, 'int', 'q'),
        Primitive('f32', 4, 'float', 'f'),
        Primitive('f64', 8, 'float', 'd'),
        Primitive('bool', 1, 'bool', 'B'),
    )
}

# Signed aliases
TYPE_ALIASES = {'s8': 'i8', 's16': 'i16', 's32': 'i32', 's64': 'i64'}


class FieldKind(Enum):
    """Closed set of field shapes the engines dispatch on."""
    PRIMITIVE = 'primitive'
    COMPOSITE = 'composite'
    OPTIONAL = 'optional'
    REPEATED = 'repeated'


@dataclass(frozen=True)
class TypeRef:
    """Reference to a primitive or to a named composite TypeDef."""
    name: str
    primitive: Optional[Primitive] = None

    @property
    def is_composite(self) -> bool:
        return self.primitive is None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class FieldSpec:
    id: str
    type: TypeRef
    condition: Optional[Expr] = None
    repeat: Optional[Expr] = None
    advance_if_absent: bool = False
    optional: bool = False  # declared as Option<T>

    @property
    def kind(self) -> FieldKind:
        if self.condition is not None:
            return FieldKind.OPTIONAL
        if self.repeat is not None:
            return FieldKind.REPEATED
        return self.element_kind

    @property
    def element_kind(self) -> FieldKind:
        return FieldKind.COMPOSITE if self.type.is_composite else FieldKind.PRIMITIVE

    @property
    def is_scalar(self) -> bool:
        """True for a single primitive value (the only kind expressions may read)."""
        return self.repeat is None and not self.type.is_composite


@dataclass(frozen=True)
class TypeDef:
    name: Optional[str]
    fields: Tuple[FieldSpec, ...]

    @property
    def is_root(self) -> bool:
        return self.name is None

    @property
    def label(self) -> str:
        return self.name if self.name is not None else ROOT

    def field(self, field_id: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.id == field_id:
                return spec
        return None


@dataclass(frozen=True)
class Schema:
    endian: Endian
    types: Mapping[str, TypeDef]
    root: TypeDef
    name: str = 'format'

    def typedef(self, name: Optional[str]) -> Optional[TypeDef]:
        if name is None:
            return self.root
        return self.types.get(name)


# =============================================================================
# Loader
# =============================================================================

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_OPTION_RE = re.compile(r'^Option\s*<\s*(.+?)\s*>$')
_COUNT_RE = re.compile(r'^Count\s*\((.*)\)$', re.DOTALL)

FIELD_KEYS = {'id', 'type', 'if', 'repeat', 'advance_if_false', 'doc'}
RESERVED_IDS = {ROOT, 'true', 'false'} | set(BOOL_OPS)


def resolve_type_name(name: str) -> TypeRef:
    name = TYPE_ALIASES.get(name, name)
    return TypeRef(name, PRIMITIVES.get(name))


def parse_type(text: Any, field_id: str, type_name: Optional[str]) -> Tuple[TypeRef, bool]:
    """Parse a field type string; returns (type_ref, wrapped_in_option)."""
    if not isinstance(text, str) or not text.strip():
        raise InvalidFieldSpec(f"type must be a non-empty string, got {text!r}",
                               field=field_id, type_name=type_name)
    text = text.strip()
    optional = False
    match = _OPTION_RE.match(text)
    if match:
        optional = True
        text = match.group(1)
    if not _IDENT_RE.match(text):
        raise InvalidFieldSpec(f"invalid type '{text}'", field=field_id, type_name=type_name)
    return resolve_type_name(text), optional


def parse_repeat(value: Any, field_id: str, type_name: Optional[str]) -> Expr:
    """Parse ``Count(expr)`` (or a literal integer count)."""
    if isinstance(value, bool):
        raise InvalidFieldSpec(f"invalid repeat {value!r}", field=field_id, type_name=type_name)
    if isinstance(value, int):
        return parse_expr(value)
    if isinstance(value, str):
        match = _COUNT_RE.match(value.strip())
        if match:
            return _parse_field_expr(match.group(1), field_id, type_name)
    raise InvalidFieldSpec(f"repeat must be 'Count(expr)', got {value!r}",
                           field=field_id, type_name=type_name)


def _parse_field_expr(text: Any, field_id: str, type_name: Optional[str]) -> Expr:
    try:
        return parse_expr(text)
    except FormatError as e:
        raise e.annotate(field_id, type_name)


def parse_field(entry: Any, type_name: Optional[str] = None) -> FieldSpec:
    """Parse one field entry mapping into a FieldSpec."""
    if not isinstance(entry, dict):
        raise InvalidFieldSpec(f"field entry must be a mapping, got {entry!r}",
                               type_name=type_name)
    field_id = entry.get('id')
    if not isinstance(field_id, str) or not _IDENT_RE.match(field_id):
        raise InvalidFieldSpec(f"field id must be an identifier, got {field_id!r}",
                               type_name=type_name)
    if field_id in RESERVED_IDS:
        raise InvalidFieldSpec(f"'{field_id}' is reserved", field=field_id, type_name=type_name)

    unknown = set(entry) - FIELD_KEYS
    if unknown:
        raise InvalidFieldSpec(f"unknown keys: {', '.join(sorted(map(str, unknown)))}",
                               field=field_id, type_name=type_name)
    if 'type' not in entry:
        raise InvalidFieldSpec("missing 'type'", field=field_id, type_name=type_name)

    type_ref, optional = parse_type(entry['type'], field_id, type_name)

    condition = None
    if entry.get('if') is not None:
        condition = _parse_field_expr(entry['if'], field_id, type_name)

    repeat = None
    if entry.get('repeat') is not None:
        repeat = parse_repeat(entry['repeat'], field_id, type_name)

    advance = entry.get('advance_if_false', False)
    if not isinstance(advance, bool):
        raise InvalidFieldSpec(f"advance_if_false must be a boolean, got {advance!r}",
                               field=field_id, type_name=type_name)

    if optional and condition is None:
        raise InvalidFieldSpec("Option<T> requires an 'if' condition",
                               field=field_id, type_name=type_name)
    if optional and advance:
        raise InvalidFieldSpec("Option<T> fields use the skip policy; "
                               "remove the wrapper to use advance_if_false",
                               field=field_id, type_name=type_name)
    if advance and condition is None:
        raise InvalidFieldSpec("advance_if_false requires an 'if' condition",
                               field=field_id, type_name=type_name)
    if advance and repeat is not None:
        raise InvalidFieldSpec("advance_if_false cannot be combined with repeat",
                               field=field_id, type_name=type_name)

    return FieldSpec(
        id=field_id,
        type=type_ref,
        condition=condition,
        repeat=repeat,
        advance_if_absent=advance,
        optional=optional,
    )


def parse_fields(entries: Any, type_name: Optional[str] = None) -> Tuple[FieldSpec, ...]:
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise SchemaError(f"field list must be a sequence, got {type(entries).__name__}",
                          type_name=type_name)
    fields: List[FieldSpec] = []
    seen = set()
    for entry in entries:
        spec = parse_field(entry, type_name)
        if spec.id in seen:
            raise DuplicateFieldId(f"duplicate field id '{spec.id}'",
                                   field=spec.id, type_name=type_name)
        seen.add(spec.id)
        fields.append(spec)
    return tuple(fields)


def parse_endian(meta: Dict[str, Any]) -> Endian:
    value = meta.get('endian', 'le')
    endian = ENDIAN_NAMES.get(str(value).lower())
    if endian is None:
        raise SchemaError(f"meta.endian must be 'be' or 'le', got {value!r}")
    return endian


def load_format(doc: Dict[str, Any]) -> Schema:
    """
    Build the Schema IR from a parsed schema document.

    Performs structural checks only; type resolution and expression checks
    happen in format_registry.TypeRegistry.
    """
    if not isinstance(doc, dict):
        raise SchemaError(f"schema must be a mapping, got {type(doc).__name__}")

    meta = doc.get('meta') or {}
    if not isinstance(meta, dict):
        raise SchemaError("meta must be a mapping")
    endian = parse_endian(meta)

    raw_types = doc.get('types') or {}
    if not isinstance(raw_types, dict):
        raise SchemaError("types must be a mapping of name to field list")

    types: Dict[str, TypeDef] = {}
    for type_name, entries in raw_types.items():
        if not isinstance(type_name, str) or not _IDENT_RE.match(type_name):
            raise SchemaError(f"invalid type name {type_name!r}")
        if resolve_type_name(type_name).primitive is not None:
            raise SchemaError(f"type name '{type_name}' shadows a primitive type",
                              type_name=type_name)
        if type_name == ROOT:
            raise SchemaError(f"type name '{ROOT}' is reserved", type_name=type_name)
        types[type_name] = TypeDef(type_name, parse_fields(entries, type_name))

    if 'items' not in doc:
        raise SchemaError("schema has no 'items' (root field list)")
    root = TypeDef(None, parse_fields(doc['items']))

    return Schema(
        endian=endian,
        types=MappingProxyType(types),
        root=root,
        name=str(meta.get('id', 'format')),
    )


def load_format_text(text: str) -> Schema:
    return load_format(yaml.safe_load(text))


def load_format_file(path: Union[str, Path]) -> Schema:
    """Load a YAML schema file into the Schema IR."""
    with open(path, 'r') as f:
        doc = yaml.safe_load(f)
    return load_format(doc)
