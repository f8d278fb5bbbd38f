#!/usr/bin/env python3
"""
format_expr.py - Condition and repeat-count expressions

The expression language gates optional fields and sizes repeated fields.
It is deliberately small: comparisons, ``and``/``or`` and field references.

    save_version >= 15
    _root.save_version >= 53 && unlocked == true
    Count(building_count)          # repeat counts use a bare identifier

Grammar:

    expr     := and_expr (('||' | 'or') and_expr)*
    and_expr := cmp (('&&' | 'and') cmp)*
    cmp      := operand (CMPOP operand)?
    operand  := '(' expr ')' | '_root' '.' IDENT | IDENT
              | INT | FLOAT | 'true' | 'false'

Unqualified identifiers resolve against the current record scope,
``_root.x`` against the outermost one.  Evaluation has no side effects and
always terminates.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Union

from format_errors import (
    ExpressionSyntaxError, ExpressionTypeError, InvalidRepeatCount,
)


ROOT = '_root'

COMPARISON_OPS = ('<=', '>=', '==', '!=', '<', '>')
BOOL_OPS = {'&&': 'and', 'and': 'and', '||': 'or', 'or': 'or'}


# =============================================================================
# AST
# =============================================================================

@dataclass(frozen=True)
class Name:
    """Reference to an already-decoded field."""
    ident: str
    root: bool = False

    def __str__(self) -> str:
        return f"{ROOT}.{self.ident}" if self.root else self.ident


@dataclass(frozen=True)
class Literal:
    value: Union[bool, int, float]

    def __str__(self) -> str:
        if isinstance(self.value, bool):
            return 'true' if self.value else 'false'
        return repr(self.value)


@dataclass(frozen=True)
class Compare:
    op: str
    left: 'Expr'
    right: 'Expr'

    def __str__(self) -> str:
        return f"{self.left} {self.op} {self.right}"


@dataclass(frozen=True)
class BoolOp:
    op: str  # 'and' | 'or'
    operands: Tuple['Expr', ...]

    def __str__(self) -> str:
        joiner = ' && ' if self.op == 'and' else ' || '
        return '(' + joiner.join(str(o) for o in self.operands) + ')'


Expr = Union[Name, Literal, Compare, BoolOp]


# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<float>\d+\.\d*(?:[eE][+-]?\d+)?)
  | (?P<hex>0[xX][0-9a-fA-F]+)
  | (?P<int>\d+)
  | (?P<op><=|>=|==|!=|<|>|&&|\|\|)
  | (?P<punct>[().])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
""", re.VERBOSE)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    column: int


def tokenize(text: str) -> List[Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ExpressionSyntaxError(f"unexpected character {text[pos]!r}", text, pos)
        kind = match.lastgroup
        if kind != 'ws':
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(Token('end', '', len(text)))
    return tokens


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def error(self, message: str, token: Optional[Token] = None):
        token = token or self.current
        return ExpressionSyntaxError(message, self.text, token.column)

    def expect(self, text: str) -> Token:
        if self.current.text != text:
            found = self.current.text or 'end of expression'
            raise self.error(f"expected '{text}', found '{found}'")
        return self.advance()

    def parse(self) -> Expr:
        if self.current.kind == 'end':
            raise self.error("empty expression")
        expr = self.parse_or()
        if self.current.kind != 'end':
            raise self.error(f"unexpected '{self.current.text}'")
        return expr

    def _bool_op(self) -> Optional[str]:
        token = self.current
        if token.kind in ('op', 'ident'):
            return BOOL_OPS.get(token.text)
        return None

    def parse_or(self) -> Expr:
        operands = [self.parse_and()]
        while self._bool_op() == 'or':
            self.advance()
            operands.append(self.parse_and())
        if len(operands) == 1:
            return operands[0]
        return BoolOp('or', tuple(operands))

    def parse_and(self) -> Expr:
        operands = [self.parse_compare()]
        while self._bool_op() == 'and':
            self.advance()
            operands.append(self.parse_compare())
        if len(operands) == 1:
            return operands[0]
        return BoolOp('and', tuple(operands))

    def parse_compare(self) -> Expr:
        left = self.parse_operand()
        if self.current.kind == 'op' and self.current.text in COMPARISON_OPS:
            op = self.advance().text
            right = self.parse_operand()
            if self.current.kind == 'op' and self.current.text in COMPARISON_OPS:
                raise self.error("comparisons cannot be chained")
            return Compare(op, left, right)
        return left

    def parse_operand(self) -> Expr:
        token = self.current
        if token.text == '(':
            self.advance()
            expr = self.parse_or()
            self.expect(')')
            return expr
        if token.kind == 'float':
            self.advance()
            return Literal(float(token.text))
        if token.kind == 'hex':
            self.advance()
            return Literal(int(token.text, 16))
        if token.kind == 'int':
            self.advance()
            return Literal(int(token.text))
        if token.kind == 'ident':
            if token.text in ('true', 'false'):
                self.advance()
                return Literal(token.text == 'true')
            if token.text in BOOL_OPS:
                raise self.error(f"operator '{token.text}' is missing an operand")
            self.advance()
            if token.text == ROOT:
                self.expect('.')
                ident = self.current
                if ident.kind != 'ident':
                    raise self.error(f"expected field name after '{ROOT}.'")
                self.advance()
                return Name(ident.text, root=True)
            return Name(token.text)
        if token.kind == 'end':
            raise self.error("unexpected end of expression")
        raise self.error(f"unexpected '{token.text}'")


def parse_expr(text: str) -> Expr:
    """Parse expression text into an AST."""
    if isinstance(text, bool):
        return Literal(text)
    if isinstance(text, int):
        return Literal(text)
    return _Parser(str(text)).parse()


# =============================================================================
# Evaluation
# =============================================================================

def _compare(op: str, left: Any, right: Any) -> bool:
    if op == '<':
        return left < right
    if op == '<=':
        return left <= right
    if op == '>':
        return left > right
    if op == '>=':
        return left >= right
    if op == '==':
        return left == right
    if op == '!=':
        return left != right
    raise ValueError(f"Unknown comparison operator: {op}")


def evaluate(expr: Expr, context) -> Union[bool, int, float]:
    """
    Evaluate an expression against a Context.

    Raises UnboundIdentifier when a referenced field is not in scope or was
    recorded as not present.
    """
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Name):
        return context.lookup(expr.ident, root=expr.root)
    if isinstance(expr, Compare):
        return _compare(expr.op, evaluate(expr.left, context),
                        evaluate(expr.right, context))
    if isinstance(expr, BoolOp):
        if expr.op == 'and':
            return all(bool(evaluate(o, context)) for o in expr.operands)
        return any(bool(evaluate(o, context)) for o in expr.operands)
    raise ValueError(f"Unknown expression node: {expr!r}")


def evaluate_condition(expr: Expr, context) -> bool:
    return bool(evaluate(expr, context))


def evaluate_count(expr: Expr, context) -> int:
    """Evaluate a repeat count; it must be a non-negative integer."""
    count = evaluate(expr, context)
    if isinstance(count, bool) or not isinstance(count, int):
        raise InvalidRepeatCount(f"repeat count '{expr}' evaluated to {count!r}, not an integer")
    if count < 0:
        raise InvalidRepeatCount(f"repeat count '{expr}' evaluated to negative value {count}")
    return count


# =============================================================================
# Static typing
# =============================================================================

def _literal_type(value: Any) -> str:
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, int):
        return 'int'
    return 'float'


def infer_type(expr: Expr, resolve: Callable[[Name], str]) -> str:
    """
    Infer the value domain of an expression: 'bool', 'int' or 'float'.

    ``resolve`` maps a Name to the domain of the field it references and
    raises if the reference is not legal at that point of the schema.
    """
    if isinstance(expr, Literal):
        return _literal_type(expr.value)
    if isinstance(expr, Name):
        return resolve(expr)
    if isinstance(expr, Compare):
        left = infer_type(expr.left, resolve)
        right = infer_type(expr.right, resolve)
        if left == 'bool' or right == 'bool':
            if left != right:
                raise ExpressionTypeError(
                    f"cannot compare {left} with {right} in '{expr}'")
            if expr.op not in ('==', '!='):
                raise ExpressionTypeError(
                    f"operator '{expr.op}' is not defined for booleans in '{expr}'")
        return 'bool'
    if isinstance(expr, BoolOp):
        for operand in expr.operands:
            domain = infer_type(operand, resolve)
            if domain != 'bool':
                raise ExpressionTypeError(
                    f"operand '{operand}' of '{expr.op}' is {domain}, not bool")
        return 'bool'
    raise ValueError(f"Unknown expression node: {expr!r}")


# =============================================================================
# Python rendering (used by the source generator)
# =============================================================================

def to_python(expr: Expr, local: str, root: str) -> str:
    """Render an expression as Python source over scope dicts."""
    if isinstance(expr, Literal):
        return repr(expr.value)
    if isinstance(expr, Name):
        if expr.root:
            return f"_ref({root}, {expr.ident!r}, {str(expr)!r})"
        return f"_ref({local}, {expr.ident!r})"
    if isinstance(expr, Compare):
        left = to_python(expr.left, local, root)
        right = to_python(expr.right, local, root)
        return f"({left} {expr.op} {right})"
    if isinstance(expr, BoolOp):
        joiner = f" {expr.op} "
        return '(' + joiner.join(to_python(o, local, root) for o in expr.operands) + ')'
    raise ValueError(f"Unknown expression node: {expr!r}")
