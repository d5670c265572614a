from __future__ import annotations

import math

import pytest

from lazymcp.errors import ErrorKind, ExecutionError, ValidationError
from lazymcp.tools.calculator import CalculatorTool

from .conftest import make_context


async def _run(arguments: dict) -> object:
    tool = CalculatorTool()
    payload = tool.validate(arguments)
    return (await tool.execute(payload, make_context())).result


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("2+2", 4),
        ("2 + 3 * 4", 14),
        ("2^10", 1024),
        ("sqrt(16)", 4),
        ("10 / 4", 2.5),
        ("7 % 3", 1),
        ("-(3 - 5)", 2),
        ("round(2.5)", 3),
        ("pow(2, 3) + abs(-1)", 9),
        ("0 * -1", 0),
    ],
)
async def test_expression_results(expression: str, expected: object) -> None:
    result = await _run({"expression": expression})
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.asyncio
async def test_expr_alias_is_accepted() -> None:
    assert await _run({"expr": "2+2"}) == 4


@pytest.mark.asyncio
async def test_constants_and_functions() -> None:
    assert await _run({"expression": "sin(pi/2)"}) == 1
    assert math.isclose(await _run({"expression": "ln(e)"}), 1.0)
    assert math.isclose(await _run({"expression": "1/3"}), 1 / 3)


@pytest.mark.asyncio
async def test_same_input_gives_same_output() -> None:
    results = {await _run({"expression": "sqrt(2) * 3.5"}) for _ in range(5)}
    assert len(results) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "expression",
    ["10/0", "5 % 0", "sqrt(-1)", "10^400", "ln(0)"],
)
async def test_invalid_operations(expression: str) -> None:
    with pytest.raises(ExecutionError) as excinfo:
        await _run({"expression": expression})
    assert excinfo.value.kind == ErrorKind.INVALID_OPERATION
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_structured_operation() -> None:
    assert await _run({"operation": "add", "a": 2, "b": 3}) == 5
    assert await _run({"operation": "power", "a": 2, "b": 0.5}) == pytest.approx(math.sqrt(2))
    with pytest.raises(ExecutionError) as excinfo:
        await _run({"operation": "divide", "a": 1, "b": 0})
    assert excinfo.value.kind == ErrorKind.INVALID_OPERATION


@pytest.mark.parametrize(
    "arguments",
    [
        {},
        {"expression": "2 +"},
        {"expression": "__import__('os')"},
        {"expression": "x + 1"},
        {"expression": "1 < 2"},
        {"expression": "'a' * 3"},
        {"expression": "sqrt(1, 2)"},
        {"expression": "1 + 1", "operation": "add", "a": 1, "b": 1},
        {"operation": "add", "a": 1},
        {"operation": "modulo", "a": 1, "b": 2},
        {"expression": "1", "unexpected": True},
        {"expression": "-" * 999 + "1"},
        {"expression": "(" * 300 + "1" + ")" * 300},
    ],
)
def test_rejected_arguments(arguments: dict) -> None:
    with pytest.raises(ValidationError) as excinfo:
        CalculatorTool().validate(arguments)
    assert excinfo.value.code == -32602
    assert excinfo.value.details["errors"]


def test_summary_formats_numbers() -> None:
    tool = CalculatorTool()
    assert tool.summarize(tool.output_model(result=4)) == "4"
    assert tool.summarize(tool.output_model(result=0.1 + 0.2)) == "0.3"


@pytest.mark.asyncio
async def test_long_flat_sums_are_evaluated() -> None:
    assert await _run({"expression": "+".join(["1"] * 200)}) == 200
