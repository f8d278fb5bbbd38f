#!/usr/bin/env python3
"""
format_registry.py - Type resolution and load-time validation

The registry turns a Schema IR into something the engines can run without
further checks:

- composite type names resolve, and the composite graph is acyclic
- types are ordered so that every type follows the types it contains
- every expression references a scalar field decoded before it, in its own
  record or (``_root.x``) in the root record
- conditions are boolean, repeat counts are integers
- advance_if_false fields have a fixed width
- repeated elements are at least one byte wide

Usage:
    from format_schema import load_format_file
    from format_registry import TypeRegistry

    registry = TypeRegistry(load_format_file('schemas/save.yaml'))
    for typedef in registry.order:
        print(typedef.label, registry.fixed_width(typedef))
"""

import logging
from typing import Any, Dict, List, Optional, Set, Union

from format_errors import (
    CyclicTypeReference, ExpressionTypeError, FormatError, InvalidFieldSpec,
    UnknownIdentifier, UnknownType,
)
from format_expr import Literal, Name, infer_type
from format_schema import FieldSpec, Schema, TypeDef, TypeRef

logger = logging.getLogger(__name__)


def resolve(schema: Schema) -> List[TypeDef]:
    """
    Order the schema's types so each appears after every type it references.

    The root TypeDef is always last.  Raises UnknownType for an undefined
    composite name and CyclicTypeReference if a type contains itself.
    """
    order: List[TypeDef] = []
    done: Set[str] = set()
    stack: List[str] = []

    def visit(typedef: TypeDef) -> None:
        for spec in typedef.fields:
            if not spec.type.is_composite:
                continue
            name = spec.type.name
            if name in done:
                continue
            if name in stack:
                cycle = stack[stack.index(name):] + [name]
                raise CyclicTypeReference(cycle, field=spec.id)
            target = schema.types.get(name)
            if target is None:
                raise UnknownType(f"unknown type '{name}'", field=spec.id,
                                  type_name=typedef.label)
            stack.append(name)
            visit(target)
            stack.pop()
            done.add(name)
            order.append(target)

    for name, typedef in schema.types.items():
        if name not in done:
            stack.append(name)
            visit(typedef)
            stack.pop()
            done.add(name)
            order.append(typedef)
    visit(schema.root)
    order.append(schema.root)
    return order


class TypeRegistry:
    """Validated, ordered view of a Schema shared read-only by codecs."""

    def __init__(self, schema: Schema):
        self.schema = schema
        self.order = resolve(schema)
        self._widths: Dict[str, Optional[int]] = {}
        self._min_widths: Dict[str, int] = {}
        self._root_refs: Dict[str, Set[str]] = {}

        for typedef in self.order:
            self._check_expressions(typedef)
            self._widths[typedef.label] = self._compute_width(typedef)
            self._min_widths[typedef.label] = sum(
                self._field_min_width(spec) for spec in typedef.fields)
            self._check_advance_fields(typedef)
            self._check_repeat_elements(typedef)
        self._check_root_positions()

        logger.debug("resolved %s: %s", schema.name,
                     ' -> '.join(t.label for t in self.order))

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    @property
    def root(self) -> TypeDef:
        return self.schema.root

    @property
    def types(self) -> List[TypeDef]:
        """Named types in dependency order."""
        return [t for t in self.order if not t.is_root]

    def lookup(self, name: Optional[str]) -> TypeDef:
        typedef = self.schema.typedef(name)
        if typedef is None:
            raise UnknownType(f"unknown type '{name}'")
        return typedef

    def root_references(self, name: Optional[str]) -> Set[str]:
        """Root field ids read by a type's expressions, including nested types."""
        return set(self._root_refs.get(self.lookup(name).label, ()))

    # -------------------------------------------------------------------------
    # Widths and zero values
    # -------------------------------------------------------------------------

    def fixed_width(self, item: Union[TypeDef, TypeRef, FieldSpec]) -> Optional[int]:
        """Width in bytes if it does not depend on decoded values, else None."""
        if isinstance(item, TypeDef):
            return self._widths[item.label]
        if isinstance(item, TypeRef):
            if item.primitive is not None:
                return item.primitive.size
            return self._widths[item.name]
        return self._field_width(item)

    def _field_width(self, spec: FieldSpec) -> Optional[int]:
        width = self.fixed_width(spec.type)
        if width is None:
            return None
        if spec.condition is not None and not spec.advance_if_absent:
            return None
        if spec.repeat is not None:
            if isinstance(spec.repeat, Literal):
                return width * spec.repeat.value
            return None
        return width

    def _compute_width(self, typedef: TypeDef) -> Optional[int]:
        total = 0
        for spec in typedef.fields:
            width = self._field_width(spec)
            if width is None:
                return None
            total += width
        return total

    def min_width(self, item: Union[TypeDef, TypeRef, FieldSpec]) -> int:
        """Fewest bytes an encoding can take; absent skip fields count as 0."""
        if isinstance(item, TypeDef):
            return self._min_widths[item.label]
        if isinstance(item, TypeRef):
            if item.primitive is not None:
                return item.primitive.size
            return self._min_widths[item.name]
        return self._field_min_width(item)

    def _field_min_width(self, spec: FieldSpec) -> int:
        if spec.condition is not None and not spec.advance_if_absent:
            return 0
        width = self.min_width(spec.type)
        if spec.repeat is not None:
            if isinstance(spec.repeat, Literal):
                return width * spec.repeat.value
            return 0
        return width

    def zero_value(self, item: Union[TypeDef, TypeRef, FieldSpec]) -> Any:
        """Value recorded for an advance_if_false field whose condition is false."""
        if isinstance(item, FieldSpec):
            if item.repeat is not None:
                count = item.repeat.value if isinstance(item.repeat, Literal) else 0
                return [self.zero_value(item.type) for _ in range(count)]
            return self.zero_value(item.type)
        if isinstance(item, TypeRef):
            if item.primitive is not None:
                return item.primitive.zero
            item = self.lookup(item.name)
        return {spec.id: self.zero_value(spec) for spec in item.fields}

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _resolver(self, typedef: TypeDef, seen: Dict[str, FieldSpec],
                  refs: Set[str], owner: FieldSpec):
        root = self.schema.root

        def resolve_name(name: Name) -> str:
            if name.root:
                target = root.field(name.ident)
                if target is None:
                    raise UnknownIdentifier(
                        f"'{name}' does not name a root field",
                        field=owner.id, type_name=typedef.label)
                if typedef.is_root and name.ident not in seen:
                    raise UnknownIdentifier(
                        f"'{name}' is not decoded before this field",
                        field=owner.id, type_name=typedef.label)
                refs.add(name.ident)
            else:
                target = seen.get(name.ident)
                if target is None:
                    if typedef.field(name.ident) is not None:
                        reason = "is not decoded before this field"
                    else:
                        reason = "does not name a field of this record"
                    raise UnknownIdentifier(f"'{name}' {reason}",
                                            field=owner.id, type_name=typedef.label)
            if not target.is_scalar:
                raise ExpressionTypeError(
                    f"'{name}' is a {target.kind.value} field and cannot be used in an expression",
                    field=owner.id, type_name=typedef.label)
            return target.type.primitive.domain

        return resolve_name

    def _check_expressions(self, typedef: TypeDef) -> None:
        seen: Dict[str, FieldSpec] = {}
        refs: Set[str] = set()
        for spec in typedef.fields:
            resolve_name = self._resolver(typedef, seen, refs, spec)
            try:
                if spec.condition is not None:
                    domain = infer_type(spec.condition, resolve_name)
                    if domain != 'bool':
                        raise ExpressionTypeError(
                            f"condition '{spec.condition}' is {domain}, not bool")
                if spec.repeat is not None:
                    self._check_repeat(spec, resolve_name)
            except FormatError as e:
                raise e.annotate(spec.id, typedef.label)
            if spec.type.is_composite:
                refs.update(self._root_refs[spec.type.name])
            seen[spec.id] = spec
        self._root_refs[typedef.label] = refs

    def _check_repeat(self, spec: FieldSpec, resolve_name) -> None:
        expr = spec.repeat
        if isinstance(expr, Literal):
            if isinstance(expr.value, bool) or not isinstance(expr.value, int) or expr.value < 0:
                raise ExpressionTypeError(
                    f"repeat count {expr} is not a non-negative integer")
            return
        if not isinstance(expr, Name):
            raise ExpressionTypeError(
                f"repeat count '{expr}' must be a field name or an integer")
        domain = resolve_name(expr)
        if domain != 'int':
            raise ExpressionTypeError(f"repeat count '{expr}' is {domain}, not int")

    def _check_advance_fields(self, typedef: TypeDef) -> None:
        for spec in typedef.fields:
            if spec.advance_if_absent and self.fixed_width(spec.type) is None:
                raise InvalidFieldSpec(
                    f"advance_if_false needs a fixed-width type, '{spec.type}' is variable",
                    field=spec.id, type_name=typedef.label)

    def _check_repeat_elements(self, typedef: TypeDef) -> None:
        """Every repeated element consumes at least one byte."""
        for spec in typedef.fields:
            if spec.repeat is not None and self.min_width(spec.type) == 0:
                raise InvalidFieldSpec(
                    f"repeated type '{spec.type}' can encode to zero bytes",
                    field=spec.id, type_name=typedef.label)

    def _check_root_positions(self) -> None:
        """Composite fields in the root may only read root fields decoded before them."""
        root = self.schema.root
        seen: Set[str] = set()
        for spec in root.fields:
            if spec.type.is_composite:
                late = self._root_refs[spec.type.name] - seen
                if late:
                    names = ', '.join(f"_root.{n}" for n in sorted(late))
                    raise UnknownIdentifier(
                        f"type '{spec.type.name}' reads {names} before it is decoded",
                        field=spec.id, type_name=root.label)
            seen.add(spec.id)


def validate_format(schema: Schema) -> TypeRegistry:
    """Run every load-time check; returns the registry on success."""
    return TypeRegistry(schema)
