#!/usr/bin/env python3
"""
format_context.py - Scopes of already-decoded values

A Context holds the values of one record decoded (or written) so far.
Nested composite records get a child Context whose parent is the record
that contains them; ``_root.x`` lookups walk the parent chain to the
outermost scope.  A Context tree lives for one decode/encode call only.
"""

from typing import Any, Dict, Iterator, Optional

from format_errors import UnboundIdentifier


class Context:
    """Per-record scope with a non-owning link to the enclosing scope."""

    __slots__ = ('values', 'parent')

    def __init__(self, parent: Optional['Context'] = None,
                 values: Optional[Dict[str, Any]] = None):
        self.values: Dict[str, Any] = dict(values) if values else {}
        self.parent = parent

    @property
    def root(self) -> 'Context':
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    @property
    def depth(self) -> int:
        depth = 0
        scope = self.parent
        while scope is not None:
            depth += 1
            scope = scope.parent
        return depth

    def child(self) -> 'Context':
        return Context(parent=self)

    def bind(self, name: str, value: Any) -> None:
        """Record a field value (None records "not present")."""
        self.values[name] = value

    def lookup(self, name: str, root: bool = False) -> Any:
        scope = self.root if root else self
        if name not in scope.values:
            label = f"_root.{name}" if root else name
            raise UnboundIdentifier(label)
        value = scope.values[name]
        if value is None:
            label = f"_root.{name}" if root else name
            raise UnboundIdentifier(label, 'not present in this record')
        return value

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __repr__(self) -> str:
        return f"Context(depth={self.depth}, values={self.values!r})"
