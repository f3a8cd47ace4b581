from __future__ import annotations

import math

import pytest

from scenario_engine.expressions import (
    UNDEFINED,
    EvaluationError,
    ParseError,
    evaluate,
    logical_operands,
    parse_expression,
    referenced_identifiers,
    source_of,
    standard_bindings,
    to_string,
)


def test_arithmetic_and_precedence() -> None:
    assert evaluate("1 + 2 * 3", {}) == 7
    assert evaluate("(1 + 2) * 3", {}) == 9
    assert evaluate("7 % 4", {}) == 3
    assert math.isinf(evaluate("1 / 0", {}))


def test_string_concatenation_and_coercion() -> None:
    assert evaluate("'id-' + 42", {}) == "id-42"
    assert evaluate("x * 2", {"x": "21"}) == 42
    assert to_string(evaluate("0.5 + 0.25", {})) == "0.75"


def test_equality_operators_follow_loose_and_strict_rules() -> None:
    bindings = {"code": "0"}
    assert evaluate("code == 0", bindings) is True
    assert evaluate("code === 0", bindings) is False
    assert evaluate("code === '0'", bindings) is True
    assert evaluate("null == undefined", {}) is True


def test_logical_operators_return_operands() -> None:
    assert evaluate("'' || 'fallback'", {}) == "fallback"
    assert evaluate("'a' && 'b'", {}) == "b"
    assert evaluate("missing_flag ? 1 : 2", {"missing_flag": ""}) == 2


def test_string_methods_and_builtins() -> None:
    bindings = standard_bindings() | {"name": "  Session-ABC  "}
    assert evaluate("name.trim().toLowerCase()", bindings) == "session-abc"
    assert evaluate("name.trim().length", bindings) == 11
    assert evaluate("name.includes('ABC')", bindings) is True
    assert evaluate("parseInt('0x1F')", bindings) == 31
    assert evaluate("Math.max(1, 5, 3)", bindings) == 5
    assert evaluate("String(12).padStart(4, '0')", bindings) == "0012"


def test_typeof_and_undefined_properties() -> None:
    bindings = {"vars": {"a": "1"}}
    assert evaluate("typeof nothing", {}) == "undefined"
    assert evaluate("vars.b", bindings) is UNDEFINED
    with pytest.raises(EvaluationError):
        evaluate("vars.b.c", bindings)


def test_unknown_identifier_and_syntax_errors() -> None:
    with pytest.raises(EvaluationError):
        evaluate("nope + 1", {})
    with pytest.raises(ParseError):
        parse_expression("1 +")


def test_logical_operands_flatten_top_level_chain() -> None:
    source = "a == 1 && b.length > 2 && c"
    expr = parse_expression(source)
    operator, operands = logical_operands(expr)
    assert operator == "&&"
    assert [source_of(item, source) for item in operands] == ["a == 1", "b.length > 2", "c"]
    assert referenced_identifiers(expr) == ["a", "b", "c"]


def test_deep_nesting_is_a_parse_error() -> None:
    assert evaluate("(" * 40 + "1" + ")" * 40, {}) == 1
    with pytest.raises(ParseError, match="nested deeper"):
        parse_expression("(" * 200 + "1" + ")" * 200)
    with pytest.raises(ParseError, match="nested deeper"):
        parse_expression("!" * 200 + "1")
