"""
Production Workflow & Billing
Billing formula engine: exact decimal evaluator.

Formula language:
    number        → 12, 2.5, .75
    identifier    → [A-Za-z_][A-Za-z0-9_]*  (a run field's formula key)
    Operators     → binary + - * /, unary + -
    Parentheses   → ( ... )

No function calls, no attribute access, no eval(). Formulas are parsed once
into a small AST (cached) and evaluated with ``decimal.Decimal``; results are
quantized to 4 decimal places with ROUND_HALF_UP. Floats are converted through
``str`` so ``2.5`` stays exactly ``2.5``.

Variable resolution (``resolve_variables``), in priority order:
    1. the literal key in the inputs
    2. a template field whose formula_key matches → value under that field's key
    3. case/whitespace/underscore-insensitive match against the input keys
Anything still unresolved raises FormulaError.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, DivisionByZero, InvalidOperation, localcontext
from functools import lru_cache
from typing import Mapping

from app.core.exceptions import FormulaError

STORAGE_QUANTUM = Decimal("0.0001")
PRESENTED_QUANTUM = Decimal("0.01")

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER_RE = re.compile(r"(?:\d+(?:\.\d*)?|\.\d+)")
_OPERATORS = "+-*/()"


# ══════════════════════════════════════════════════════════════
# TOKENIZER
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Token:
    kind: str    # "num" | "ident" | "op"
    text: str
    pos: int


def tokenize(formula: str) -> list[Token]:
    """Split a formula string into tokens."""
    tokens: list[Token] = []
    i = 0
    s = formula
    while i < len(s):
        c = s[i]
        if c.isspace():
            i += 1
            continue
        m = _NUMBER_RE.match(s, i)
        if m:
            tokens.append(Token("num", m.group(0), i))
            i = m.end()
            continue
        m = _IDENT_RE.match(s, i)
        if m:
            tokens.append(Token("ident", m.group(0), i))
            i = m.end()
            continue
        if c in _OPERATORS:
            tokens.append(Token("op", c, i))
            i += 1
            continue
        raise FormulaError(f"Unexpected character {c!r} at position {i}", formula=formula)
    return tokens


# ══════════════════════════════════════════════════════════════
# PARSER (recursive descent → tuple AST)
# ══════════════════════════════════════════════════════════════
#
# AST nodes:
#   ("num", Decimal)
#   ("var", name)
#   ("neg", node)
#   ("bin", op, left, right)

class _FormulaParser:

    def __init__(self, formula: str, tokens: list[Token]):
        self._formula = formula
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _consume(self) -> Token:
        tok = self._tokens[self._pos]
        self._pos += 1
        return tok

    def _error(self, message: str) -> FormulaError:
        return FormulaError(message, formula=self._formula)

    def parse(self):
        if not self._tokens:
            raise self._error("Formula is empty")
        node = self._parse_expr()
        tok = self._peek()
        if tok is not None:
            raise self._error(f"Unexpected token {tok.text!r} at position {tok.pos}")
        return node

    def _parse_expr(self):
        """Expression: term ((+|-) term)*"""
        left = self._parse_term()
        while (tok := self._peek()) is not None and tok.kind == "op" and tok.text in "+-":
            self._consume()
            left = ("bin", tok.text, left, self._parse_term())
        return left

    def _parse_term(self):
        """Term: unary ((*|/) unary)*"""
        left = self._parse_unary()
        while (tok := self._peek()) is not None and tok.kind == "op" and tok.text in "*/":
            self._consume()
            left = ("bin", tok.text, left, self._parse_unary())
        return left

    def _parse_unary(self):
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in "+-":
            self._consume()
            operand = self._parse_unary()
            return ("neg", operand) if tok.text == "-" else operand
        return self._parse_atom()

    def _parse_atom(self):
        """Atom: number | identifier | (expr)"""
        tok = self._peek()
        if tok is None:
            raise self._error("Unexpected end of formula")
        self._consume()

        if tok.kind == "num":
            return ("num", Decimal(tok.text))

        if tok.kind == "ident":
            nxt = self._peek()
            if nxt is not None and nxt.text == "(":
                raise self._error(f"Function calls are not allowed ({tok.text}(...))")
            return ("var", tok.text)

        if tok.text == "(":
            node = self._parse_expr()
            closing = self._peek()
            if closing is None or closing.text != ")":
                raise self._error("Expected ')'")
            self._consume()
            return node

        raise self._error(f"Unexpected token {tok.text!r} at position {tok.pos}")


@lru_cache(maxsize=512)
def parse(formula: str):
    """Parse ``formula`` into an AST. Cached; the AST is immutable tuples."""
    if formula is None:
        raise FormulaError("Formula is empty")
    return _FormulaParser(formula, tokenize(formula)).parse()


# ══════════════════════════════════════════════════════════════
# EVALUATION
# ══════════════════════════════════════════════════════════════

def to_decimal(value, name: str | None = None) -> Decimal:
    """Convert an input value to Decimal without going through binary float."""
    if isinstance(value, bool):
        raise FormulaError(f"Variable {name!r} is a boolean, not a number", variable=name)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise FormulaError(f"Variable {name!r} is not numeric: {value!r}", variable=name)
    else:
        raise FormulaError(f"Variable {name!r} is not numeric: {value!r}", variable=name)
    if not result.is_finite():
        raise FormulaError(f"Variable {name!r} is not a finite number", variable=name)
    return result


def quantize_storage(value: Decimal) -> Decimal:
    return value.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_presented(value: Decimal) -> Decimal:
    return value.quantize(PRESENTED_QUANTUM, rounding=ROUND_HALF_UP)


def _eval(node, variables: Mapping[str, Decimal], formula: str) -> Decimal:
    kind = node[0]
    if kind == "num":
        return node[1]
    if kind == "var":
        name = node[1]
        if name not in variables:
            raise FormulaError(f"Undefined variable {name!r}", formula=formula, variable=name)
        return variables[name]
    if kind == "neg":
        return -_eval(node[1], variables, formula)

    _, op, left_node, right_node = node
    left = _eval(left_node, variables, formula)
    right = _eval(right_node, variables, formula)
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        raise FormulaError("Division by zero", formula=formula)
    return left / right


def evaluate(formula: str, variables: Mapping[str, object]) -> Decimal:
    """Evaluate ``formula`` against ``variables`` and return a 4-dp Decimal.

    >>> evaluate("quantity * new_rate", {"quantity": 10, "new_rate": 2.5})
    Decimal('25.0000')
    """
    ast = parse(formula)
    decimals = {name: to_decimal(value, name) for name, value in variables.items()}
    with localcontext() as ctx:
        ctx.prec = 34
        ctx.traps[DivisionByZero] = True
        try:
            return quantize_storage(_eval(ast, decimals, formula))
        except (InvalidOperation, DivisionByZero) as exc:
            raise FormulaError(f"Arithmetic error: {exc!r}", formula=formula) from exc


def extract_variables(formula: str) -> set[str]:
    """Return every identifier referenced by ``formula``."""
    names: set[str] = set()
    stack = [parse(formula)]
    while stack:
        node = stack.pop()
        if node[0] == "var":
            names.add(node[1])
        elif node[0] == "neg":
            stack.append(node[1])
        elif node[0] == "bin":
            stack.extend((node[2], node[3]))
    return names


def validate_formula(formula: str, allowed: set[str] | None = None) -> set[str]:
    """Parse ``formula`` and check its variables against ``allowed``.

    Returns the referenced variables. Raises FormulaError on syntax errors,
    function calls, or (when ``allowed`` is given) unknown variables.
    """
    variables = extract_variables(formula)
    if allowed is not None:
        unknown = sorted(variables - set(allowed))
        if unknown:
            raise FormulaError(
                f"Formula references unknown variable(s): {', '.join(unknown)}",
                formula=formula, variable=unknown[0],
            )
    return variables


def formula_checksum(formula: str) -> str:
    return hashlib.sha256(formula.encode("utf-8")).hexdigest()


# ══════════════════════════════════════════════════════════════
# VARIABLE RESOLUTION
# ══════════════════════════════════════════════════════════════

def normalize_key(key: str) -> str:
    """'New Rate ' → 'new_rate'. Used for template formula keys."""
    return re.sub(r"[^a-z0-9]+", "_", key.strip().lower()).strip("_")


def _fuzzy(key: str) -> str:
    return re.sub(r"[\s_]+", "", key.lower())


def resolve_variables(
    formula: str,
    inputs: Mapping[str, object],
    template_fields: list[dict] | None = None,
) -> dict[str, Decimal]:
    """Bind every variable of ``formula`` to a Decimal taken from ``inputs``."""
    aliases = {
        f["formula_key"]: f["key"]
        for f in (template_fields or [])
        if f.get("formula_key") and f.get("key")
    }
    fuzzy_index: dict[str, str] = {}
    for key in inputs:
        fuzzy_index.setdefault(_fuzzy(key), key)

    resolved: dict[str, Decimal] = {}
    for name in sorted(extract_variables(formula)):
        if name in inputs:
            source = name
        elif name in aliases and aliases[name] in inputs:
            source = aliases[name]
        elif _fuzzy(name) in fuzzy_index:
            source = fuzzy_index[_fuzzy(name)]
        else:
            raise FormulaError(
                f"Missing value for variable {name!r}", formula=formula, variable=name,
            )
        value = inputs[source]
        if value is None or value == "":
            raise FormulaError(
                f"Missing value for variable {name!r}", formula=formula, variable=name,
            )
        resolved[name] = to_decimal(value, name)
    return resolved
