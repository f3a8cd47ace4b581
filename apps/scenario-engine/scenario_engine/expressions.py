"""Sandboxed expression language for `js:` placeholders and assertions.

Expressions follow a small JavaScript-like grammar::

    conditional := or ("?" conditional ":" conditional)?
    or          := and ("||" and)*
    and         := equality ("&&" equality)*
    equality    := relational (("==" | "!=" | "===" | "!==") relational)*
    relational  := additive (("<" | ">" | "<=" | ">=") additive)*
    additive    := multiplicative (("+" | "-") multiplicative)*
    multiplicative := unary (("*" | "/" | "%") unary)*
    unary       := ("!" | "-" | "+" | "typeof") unary | postfix
    postfix     := primary ("." NAME | "[" conditional "]" | "(" args ")")*

Only the names handed to :class:`Interpreter` are reachable; there is no
access to Python attributes, modules or builtins. Values use JavaScript
coercion rules, so existing scenario files keep their
meaning (`"0"` is truthy, `"5" == 5` holds, `"a" + 1` concatenates).
"""

from __future__ import annotations

import math
import os
import random
import re
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence


class ExpressionError(Exception):
    pass


class ParseError(ExpressionError):
    pass


class EvaluationError(ExpressionError):
    pass


class _Undefined:
    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


@dataclass
class Token:
    kind: str
    value: str
    start: int
    end: int


TOKEN_RE = re.compile(
    r"""
    (?P<NUMBER>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<STRING>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
  | (?P<OP>===|!==|==|!=|<=|>=|&&|\|\||[+\-*/%<>!?:.,()\[\]])
  | (?P<ID>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<SKIP>\s+)
  | (?P<MISMATCH>.)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


def tokenize(source: str) -> list[Token]:
    pos = 0
    tokens: list[Token] = []
    while pos < len(source):
        m = TOKEN_RE.match(source, pos)
        if not m:
            raise ParseError(f"Tokenizer stalled at offset {pos}")
        kind = m.lastgroup or "MISMATCH"
        value = m.group(0)
        if kind == "MISMATCH":
            raise ParseError(f"Unexpected character {value!r} at offset {pos}")
        if kind != "SKIP":
            tokens.append(Token(kind, value, m.start(), m.end()))
        pos = m.end()
    tokens.append(Token("EOF", "", len(source), len(source)))
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt == "u" and re.fullmatch(r"[0-9a-fA-F]{4}", body[i + 2 : i + 6]):
                out.append(chr(int(body[i + 2 : i + 6], 16)))
                i += 6
                continue
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


@dataclass
class Expr:
    pass


@dataclass
class Literal(Expr):
    value: Any
    span: tuple[int, int] = (0, 0)


@dataclass
class Var(Expr):
    name: str
    span: tuple[int, int] = (0, 0)


@dataclass
class Unary(Expr):
    op: str
    operand: Expr
    span: tuple[int, int] = (0, 0)


@dataclass
class Binary(Expr):
    left: Expr
    op: str
    right: Expr
    span: tuple[int, int] = (0, 0)


@dataclass
class Conditional(Expr):
    test: Expr
    then: Expr
    otherwise: Expr
    span: tuple[int, int] = (0, 0)


@dataclass
class Member(Expr):
    target: Expr
    name: str
    span: tuple[int, int] = (0, 0)


@dataclass
class Index(Expr):
    target: Expr
    index: Expr
    span: tuple[int, int] = (0, 0)


@dataclass
class Call(Expr):
    callee: Expr
    args: list[Expr]
    span: tuple[int, int] = (0, 0)


MAX_NESTING = 64

_CONSTANTS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
    "NaN": math.nan,
    "Infinity": math.inf,
}


class Parser:
    def __init__(self, tokens: Sequence[Token]):
        self.tokens = list(tokens)
        self.i = 0
        self.depth = 0

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise ParseError(f"Expression nested deeper than {MAX_NESTING} levels at offset {self.cur().start}")

    def cur(self) -> Token:
        return self.tokens[self.i]

    def last_end(self) -> int:
        return self.tokens[self.i - 1].end if self.i else 0

    def match(self, kind: str, value: Optional[str] = None) -> Optional[Token]:
        t = self.cur()
        if t.kind != kind:
            return None
        if value is not None and t.value != value:
            return None
        self.i += 1
        return t

    def expect(self, kind: str, value: Optional[str] = None) -> Token:
        t = self.cur()
        if t.kind != kind or (value is not None and t.value != value):
            want = f"{kind}:{value}" if value else kind
            raise ParseError(f"Expected {want} at offset {t.start}, got {t.kind}:{t.value!r}")
        self.i += 1
        return t

    def at_op(self, *values: str) -> bool:
        t = self.cur()
        return t.kind == "OP" and t.value in values

    def parse(self) -> Expr:
        if self.cur().kind == "EOF":
            raise ParseError("Empty expression")
        expr = self.parse_conditional()
        t = self.cur()
        if t.kind != "EOF":
            raise ParseError(f"Unexpected token {t.value!r} at offset {t.start}")
        return expr

    def parse_conditional(self) -> Expr:
        self._enter()
        try:
            start = self.cur().start
            expr = self.parse_or()
            if self.match("OP", "?"):
                then = self.parse_conditional()
                self.expect("OP", ":")
                otherwise = self.parse_conditional()
                expr = Conditional(expr, then, otherwise, (start, self.last_end()))
            return expr
        finally:
            self.depth -= 1

    def _binary_level(self, operators: tuple[str, ...], operand: Callable[[], Expr]) -> Expr:
        start = self.cur().start
        expr = operand()
        while self.at_op(*operators):
            op = self.expect("OP").value
            expr = Binary(expr, op, operand(), (start, self.last_end()))
        return expr

    def parse_or(self) -> Expr:
        return self._binary_level(("||",), self.parse_and)

    def parse_and(self) -> Expr:
        return self._binary_level(("&&",), self.parse_eq)

    def parse_eq(self) -> Expr:
        return self._binary_level(("==", "!=", "===", "!=="), self.parse_cmp)

    def parse_cmp(self) -> Expr:
        return self._binary_level(("<", ">", "<=", ">="), self.parse_term)

    def parse_term(self) -> Expr:
        return self._binary_level(("+", "-"), self.parse_factor)

    def parse_factor(self) -> Expr:
        return self._binary_level(("*", "/", "%"), self.parse_unary)

    def parse_unary(self) -> Expr:
        start = self.cur().start
        if self.at_op("!", "-", "+"):
            op = self.expect("OP").value
        elif self.match("ID", "typeof"):
            op = "typeof"
        else:
            return self.parse_postfix()
        self._enter()
        try:
            operand = self.parse_unary()
        finally:
            self.depth -= 1
        return Unary(op, operand, (start, self.last_end()))

    def parse_postfix(self) -> Expr:
        start = self.cur().start
        expr = self.parse_primary()
        while True:
            if self.match("OP", "."):
                name = self.expect("ID").value
                expr = Member(expr, name, (start, self.last_end()))
            elif self.match("OP", "["):
                index = self.parse_conditional()
                self.expect("OP", "]")
                expr = Index(expr, index, (start, self.last_end()))
            elif self.match("OP", "("):
                args: list[Expr] = []
                if not self.match("OP", ")"):
                    while True:
                        args.append(self.parse_conditional())
                        if self.match("OP", ")"):
                            break
                        self.expect("OP", ",")
                expr = Call(expr, args, (start, self.last_end()))
            else:
                return expr

    def parse_primary(self) -> Expr:
        t = self.cur()
        span = (t.start, t.end)
        if self.match("NUMBER"):
            return Literal(float(t.value), span)
        if self.match("STRING"):
            return Literal(_unquote(t.value), span)
        if self.match("ID"):
            if t.value in _CONSTANTS:
                return Literal(_CONSTANTS[t.value], span)
            return Var(t.value, span)
        if self.match("OP", "("):
            expr = self.parse_conditional()
            self.expect("OP", ")")
            return expr
        raise ParseError(f"Unexpected token in expression at offset {t.start}: {t.kind}:{t.value!r}")


def parse_expression(source: str) -> Expr:
    return Parser(tokenize(source)).parse()


# -- coercion -----------------------------------------------------------------

_NUMERIC_RE = re.compile(r"[+-]?(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?|Infinity)")
_FLOAT_PREFIX_RE = re.compile(r"[+-]?(?:Infinity|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)")


def js_type(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if callable(value):
        return "function"
    return "object"


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if value is None:
        return 0.0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if re.fullmatch(r"0[xX][0-9a-fA-F]+", text):
            return float(int(text, 16))
        if _NUMERIC_RE.fullmatch(text):
            return float(text.replace("Infinity", "inf"))
    return math.nan


def _number_to_string(number: float) -> str:
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "Infinity" if number > 0 else "-Infinity"
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return repr(number)


def to_string(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _number_to_string(float(value))
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None or item is UNDEFINED else to_string(item) for item in value)
    if callable(value):
        return "function () { [native code] }"
    return "[object Object]"


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return len(value) > 0
    return True


def _is_primitive(value: Any) -> bool:
    return value is None or value is UNDEFINED or isinstance(value, (bool, int, float, str))


def strict_equals(left: Any, right: Any) -> bool:
    if js_type(left) != js_type(right):
        return left is None and right is None
    if isinstance(left, (int, float)) and not isinstance(left, bool):
        return float(left) == float(right)
    if _is_primitive(left):
        return left == right
    return left is right


def loose_equals(left: Any, right: Any) -> bool:
    left_nullish = left is None or left is UNDEFINED
    right_nullish = right is None or right is UNDEFINED
    if left_nullish or right_nullish:
        return left_nullish and right_nullish
    if js_type(left) == js_type(right):
        return strict_equals(left, right)
    if isinstance(left, bool):
        return loose_equals(to_number(left), right)
    if isinstance(right, bool):
        return loose_equals(left, to_number(right))
    if _is_primitive(left) and _is_primitive(right):
        return to_number(left) == to_number(right)
    if not _is_primitive(left):
        return loose_equals(to_string(left), right)
    return loose_equals(left, to_string(right))


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left
        b: Any = right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


def _remainder(left: float, right: float) -> float:
    if right == 0 or math.isinf(left) or math.isnan(left) or math.isnan(right):
        return math.nan
    return math.fmod(left, right)


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


# -- builtins -----------------------------------------------------------------

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def parse_int(value: Any = UNDEFINED, radix: Any = UNDEFINED) -> float:
    text = to_string(value).lstrip()
    sign = 1.0
    if text[:1] in "+-" and text:
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    base = int(to_number(radix)) if radix is not UNDEFINED else 0
    if base == 0:
        base = 10
        if text[:2].lower() == "0x":
            base = 16
            text = text[2:]
    elif base == 16 and text[:2].lower() == "0x":
        text = text[2:]
    if base < 2 or base > 36:
        return math.nan
    allowed = _DIGITS[:base]
    digits = ""
    for ch in text:
        if ch.lower() not in allowed:
            break
        digits += ch
    if not digits:
        return math.nan
    return sign * float(int(digits, base))


def parse_float(value: Any = UNDEFINED) -> float:
    match = _FLOAT_PREFIX_RE.match(to_string(value).lstrip())
    if not match:
        return math.nan
    return float(match.group(0).replace("Infinity", "inf"))


def _js_round(value: Any = UNDEFINED) -> float:
    number = to_number(value)
    if math.isnan(number) or math.isinf(number):
        return number
    return float(math.floor(number + 0.5))


def _numeric(fn: Callable[..., float]) -> Callable[..., float]:
    def wrapper(*args: Any) -> float:
        numbers = [to_number(arg) for arg in args]
        try:
            return fn(*numbers)
        except (ValueError, OverflowError):
            return math.nan

    return wrapper


def _js_max(*args: Any) -> float:
    numbers = [to_number(arg) for arg in args]
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return max(numbers, default=-math.inf)


def _js_min(*args: Any) -> float:
    numbers = [to_number(arg) for arg in args]
    if any(math.isnan(n) for n in numbers):
        return math.nan
    return min(numbers, default=math.inf)


MATH = {
    "PI": math.pi,
    "E": math.e,
    "floor": _numeric(lambda x=math.nan: float(math.floor(x)) if math.isfinite(x) else x),
    "ceil": _numeric(lambda x=math.nan: float(math.ceil(x)) if math.isfinite(x) else x),
    "trunc": _numeric(lambda x=math.nan: float(math.trunc(x)) if math.isfinite(x) else x),
    "round": _js_round,
    "abs": _numeric(lambda x=math.nan: abs(x)),
    "sqrt": _numeric(lambda x=math.nan: math.sqrt(x) if x >= 0 else math.nan),
    "pow": _numeric(lambda x=math.nan, y=math.nan: math.pow(x, y)),
    "min": _js_min,
    "max": _js_max,
    "random": lambda *_: random.random(),
}

DATE = {"now": lambda *_: float(int(time.time() * 1000))}


def _substring(text: str, start: Any = 0.0, end: Any = UNDEFINED) -> str:
    length = len(text)

    def clamp(value: Any, default: int) -> int:
        if value is UNDEFINED:
            return default
        number = to_number(value)
        if math.isnan(number):
            return 0
        return int(min(max(number, 0), length))

    a, b = clamp(start, 0), clamp(end, length)
    if a > b:
        a, b = b, a
    return text[a:b]


def _slice(text: str, start: Any = 0.0, end: Any = UNDEFINED) -> str:
    length = len(text)

    def resolve(value: Any, default: int) -> int:
        if value is UNDEFINED:
            return default
        number = to_number(value)
        if math.isnan(number):
            return 0
        index = int(number)
        if index < 0:
            return max(length + index, 0)
        return min(index, length)

    a, b = resolve(start, 0), resolve(end, length)
    return text[a:b] if a < b else ""


def _pad_start(text: str, target: Any = 0.0, fill: Any = " ") -> str:
    width = int(to_number(target)) if not math.isnan(to_number(target)) else 0
    filler = to_string(fill) if fill is not UNDEFINED else " "
    if width <= len(text) or not filler:
        return text
    needed = width - len(text)
    return (filler * (needed // len(filler) + 1))[:needed] + text


_STRING_METHODS: dict[str, Callable[..., Any]] = {
    "substring": _substring,
    "slice": _slice,
    "toUpperCase": lambda s, *_: s.upper(),
    "toLowerCase": lambda s, *_: s.lower(),
    "trim": lambda s, *_: s.strip(),
    "includes": lambda s, sub=UNDEFINED, *_: to_string(sub) in s,
    "startsWith": lambda s, sub=UNDEFINED, *_: s.startswith(to_string(sub)),
    "endsWith": lambda s, sub=UNDEFINED, *_: s.endswith(to_string(sub)),
    "indexOf": lambda s, sub=UNDEFINED, *_: float(s.find(to_string(sub))),
    "charAt": lambda s, i=0.0, *_: _slice(s, i, to_number(i) + 1) if to_number(i) >= 0 else "",
    "padStart": _pad_start,
    "replace": lambda s, old=UNDEFINED, new=UNDEFINED, *_: s.replace(to_string(old), to_string(new), 1),
    "toString": lambda s, *_: s,
}


def standard_bindings() -> dict[str, Any]:
    """Names available to every expression."""

    return {
        "Math": MATH,
        "Date": DATE,
        "parseInt": parse_int,
        "parseFloat": parse_float,
        "String": lambda value=UNDEFINED, *_: to_string(value) if value is not UNDEFINED else "",
        "Number": lambda value=0.0, *_: to_number(value),
        "isNaN": lambda value=UNDEFINED, *_: math.isnan(to_number(value)),
    }


def environment_bindings() -> dict[str, str]:
    return dict(os.environ)


# -- evaluation ---------------------------------------------------------------


class Interpreter:
    """Tree-walking evaluator over a closed set of bindings."""

    def __init__(self, bindings: Mapping[str, Any]):
        self.bindings = dict(bindings)

    def evaluate(self, expr: Expr) -> Any:
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, Var):
            if expr.name in self.bindings:
                return self.bindings[expr.name]
            raise EvaluationError(f"{expr.name} is not defined")
        if isinstance(expr, Unary):
            return self._unary(expr)
        if isinstance(expr, Binary):
            return self._binary(expr)
        if isinstance(expr, Conditional):
            branch = expr.then if truthy(self.evaluate(expr.test)) else expr.otherwise
            return self.evaluate(branch)
        if isinstance(expr, Member):
            return self._property(self.evaluate(expr.target), expr.name)
        if isinstance(expr, Index):
            target = self.evaluate(expr.target)
            return self._property(target, self.evaluate(expr.index))
        if isinstance(expr, Call):
            callee = self.evaluate(expr.callee)
            if not callable(callee):
                raise EvaluationError(f"{_describe(expr.callee)} is not a function")
            args = [self.evaluate(arg) for arg in expr.args]
            return callee(*args)
        raise EvaluationError(f"Unsupported expression {expr!r}")

    def _unary(self, expr: Unary) -> Any:
        if expr.op == "typeof":
            if isinstance(expr.operand, Var) and expr.operand.name not in self.bindings:
                return "undefined"
            return js_type(self.evaluate(expr.operand))
        value = self.evaluate(expr.operand)
        if expr.op == "!":
            return not truthy(value)
        if expr.op == "-":
            return -to_number(value)
        return to_number(value)

    def _binary(self, expr: Binary) -> Any:
        left = self.evaluate(expr.left)
        if expr.op == "&&":
            return self.evaluate(expr.right) if truthy(left) else left
        if expr.op == "||":
            return left if truthy(left) else self.evaluate(expr.right)
        right = self.evaluate(expr.right)
        op = expr.op
        if op == "+":
            if isinstance(left, str) or isinstance(right, str) or not (_is_primitive(left) and _is_primitive(right)):
                return to_string(left) + to_string(right)
            return to_number(left) + to_number(right)
        if op == "-":
            return to_number(left) - to_number(right)
        if op == "*":
            return to_number(left) * to_number(right)
        if op == "/":
            return _divide(to_number(left), to_number(right))
        if op == "%":
            return _remainder(to_number(left), to_number(right))
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        return _compare(op, left, right)

    @staticmethod
    def _property(target: Any, key: Any) -> Any:
        if target is None or target is UNDEFINED:
            raise EvaluationError(
                f"Cannot read properties of {to_string(target)} (reading '{to_string(key)}')"
            )
        name = to_string(key)
        if isinstance(target, str):
            if name == "length":
                return float(len(target))
            if name in _STRING_METHODS:
                return partial(_STRING_METHODS[name], target)
            if isinstance(key, (int, float)) and not isinstance(key, bool):
                index = int(key)
                if float(index) == float(key) and 0 <= index < len(target):
                    return target[index]
            return UNDEFINED
        if isinstance(target, Mapping):
            return target.get(name, UNDEFINED)
        if isinstance(target, (list, tuple)):
            if name == "length":
                return float(len(target))
            number = to_number(key)
            if not math.isnan(number) and number.is_integer() and 0 <= number < len(target):
                return target[int(number)]
        return UNDEFINED


def _describe(expr: Expr) -> str:
    if isinstance(expr, Var):
        return expr.name
    if isinstance(expr, Member):
        return f"{_describe(expr.target)}.{expr.name}"
    return "expression"


def evaluate(source: str, bindings: Mapping[str, Any]) -> Any:
    """Parse and evaluate `source` against `bindings`."""

    return Interpreter(bindings).evaluate(parse_expression(source))


def logical_operands(expr: Expr) -> tuple[Optional[str], list[Expr]]:
    """Flatten a top-level `&&` or `||` chain into its operands."""

    if not (isinstance(expr, Binary) and expr.op in {"&&", "||"}):
        return None, [expr]
    op = expr.op

    def walk(node: Expr) -> Iterator[Expr]:
        if isinstance(node, Binary) and node.op == op:
            yield from walk(node.left)
            yield from walk(node.right)
        else:
            yield node

    return op, list(walk(expr))


def source_of(expr: Expr, source: str) -> str:
    start, end = getattr(expr, "span", (0, 0))
    return source[start:end].strip()


def referenced_identifiers(expr: Expr) -> list[str]:
    """Free identifiers of `expr`, in first-use order."""

    seen: list[str] = []

    def walk(node: Expr) -> None:
        if isinstance(node, Var):
            if node.name not in seen:
                seen.append(node.name)
        elif isinstance(node, Unary):
            walk(node.operand)
        elif isinstance(node, Binary):
            walk(node.left)
            walk(node.right)
        elif isinstance(node, Conditional):
            walk(node.test)
            walk(node.then)
            walk(node.otherwise)
        elif isinstance(node, Member):
            walk(node.target)
        elif isinstance(node, Index):
            walk(node.target)
            walk(node.index)
        elif isinstance(node, Call):
            walk(node.callee)
            for arg in node.args:
                walk(arg)

    walk(expr)
    return seen
