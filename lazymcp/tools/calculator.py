"""Calculator tool: deterministic arithmetic over a restricted grammar."""

from __future__ import annotations

import ast
import math
import operator
from enum import Enum
from typing import Callable, Union

from pydantic import AliasChoices, Field, field_validator, model_validator

from ..errors import ErrorKind, ExecutionError
from .base import CallContext, Tool, ToolInputModel, ToolOutputModel

MAX_EXPRESSION_LENGTH = 1000
MAX_NESTING_DEPTH = 250

# Largest magnitude at which every integer is exactly representable as a float.
_EXACT_INT_LIMIT = 2**53


def _invalid(message: str) -> ExecutionError:
    return ExecutionError(ErrorKind.INVALID_OPERATION, message, retryable=False)


def _divide(a: float, b: float) -> float:
    if b == 0:
        raise _invalid("division by zero")
    return a / b


def _modulo(a: float, b: float) -> float:
    if b == 0:
        raise _invalid("modulo by zero")
    return math.fmod(a, b)


def _round_half_away(value: float) -> float:
    if value >= 0:
        return math.floor(value + 0.5)
    return -math.floor(-value + 0.5)


_BINARY_OPERATORS: dict[type[ast.operator], Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: _divide,
    ast.Mod: _modulo,
    ast.Pow: math.pow,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_CONSTANTS: dict[str, float] = {"pi": math.pi, "e": math.e}

_FUNCTIONS: dict[str, tuple[Callable[..., float], int]] = {
    "sqrt": (math.sqrt, 1),
    "sin": (math.sin, 1),
    "cos": (math.cos, 1),
    "tan": (math.tan, 1),
    "asin": (math.asin, 1),
    "acos": (math.acos, 1),
    "atan": (math.atan, 1),
    "log": (math.log10, 1),
    "ln": (math.log, 1),
    "abs": (math.fabs, 1),
    "ceil": (lambda value: float(math.ceil(value)), 1),
    "floor": (lambda value: float(math.floor(value)), 1),
    "round": (_round_half_away, 1),
    "pow": (math.pow, 2),
}


class CalculatorOperation(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    POWER = "power"


_OPERATION_FUNCTIONS: dict[CalculatorOperation, Callable[[float, float], float]] = {
    CalculatorOperation.ADD: operator.add,
    CalculatorOperation.SUBTRACT: operator.sub,
    CalculatorOperation.MULTIPLY: operator.mul,
    CalculatorOperation.DIVIDE: _divide,
    CalculatorOperation.POWER: math.pow,
}


def parse_expression(expression: str) -> ast.Expression:
    """Parse ``expression`` and reject anything outside the calculator grammar.

    ``^`` is accepted as an alias for exponentiation.
    """
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ValueError(f"expression longer than {MAX_EXPRESSION_LENGTH} characters")
    source = expression.replace("^", "**").strip()
    if not source:
        raise ValueError("expression is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"invalid expression syntax: {exc.msg}") from exc
    except (RecursionError, MemoryError) as exc:
        raise ValueError(f"expression nests deeper than {MAX_NESTING_DEPTH} levels") from exc
    pending: list[tuple[ast.AST, int]] = [(tree, 0)]
    while pending:
        node, depth = pending.pop()
        if depth > MAX_NESTING_DEPTH:
            raise ValueError(f"expression nests deeper than {MAX_NESTING_DEPTH} levels")
        _check_node(node)
        pending.extend((child, depth + 1) for child in ast.iter_child_nodes(node))
    return tree


def _check_node(node: ast.AST) -> None:
    if isinstance(node, (ast.Expression, ast.Load)):
        return
    if isinstance(node, ast.BinOp):
        if type(node.op) not in _BINARY_OPERATORS:
            raise ValueError(f"unsupported operator {type(node.op).__name__}")
        return
    if isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPERATORS:
            raise ValueError(f"unsupported operator {type(node.op).__name__}")
        return
    if type(node) in _BINARY_OPERATORS or type(node) in _UNARY_OPERATORS:
        return
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ValueError(f"unsupported literal {node.value!r}")
        return
    if isinstance(node, ast.Name):
        if node.id not in _CONSTANTS and node.id not in _FUNCTIONS:
            raise ValueError(f"unknown name {node.id!r}")
        return
    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ValueError("only built-in calculator functions can be called")
        if node.keywords:
            raise ValueError("keyword arguments are not supported")
        _, arity = _FUNCTIONS[node.func.id]
        if len(node.args) != arity:
            raise ValueError(f"{node.func.id}() takes {arity} argument(s)")
        return
    raise ValueError(f"unsupported syntax {type(node).__name__}")


def _checked(value: float) -> float:
    if not math.isfinite(value):
        raise _invalid("result is not a finite number")
    return value


def _apply(function: Callable[..., float], *args: float) -> float:
    try:
        return _checked(function(*args))
    except OverflowError as exc:
        raise _invalid("numeric overflow") from exc
    except ValueError as exc:
        raise _invalid(f"math domain error: {exc}") from exc
    except ZeroDivisionError as exc:
        raise _invalid("division by zero") from exc


def evaluate(node: ast.AST) -> float:
    """Evaluate a tree produced by ``parse_expression``."""
    if isinstance(node, ast.Expression):
        return evaluate(node.body)
    if isinstance(node, ast.Constant):
        return _apply(float, node.value)
    if isinstance(node, ast.Name):
        if node.id not in _CONSTANTS:
            raise _invalid(f"{node.id} is a function, not a value")
        return _CONSTANTS[node.id]
    if isinstance(node, ast.UnaryOp):
        return _apply(_UNARY_OPERATORS[type(node.op)], evaluate(node.operand))
    if isinstance(node, ast.BinOp):
        left = evaluate(node.left)
        right = evaluate(node.right)
        return _apply(_BINARY_OPERATORS[type(node.op)], left, right)
    if isinstance(node, ast.Call):
        function, _ = _FUNCTIONS[node.func.id]
        args = [evaluate(arg) for arg in node.args]
        return _apply(function, *args)
    raise _invalid(f"unsupported syntax {type(node).__name__}")  # pragma: no cover


def normalize_number(value: float) -> Union[int, float]:
    if value.is_integer() and abs(value) <= _EXACT_INT_LIMIT:
        return int(value)
    return value


class CalculatorInput(ToolInputModel):
    expression: str | None = Field(
        default=None,
        validation_alias=AliasChoices("expression", "expr"),
        description=(
            "Mathematical expression to evaluate. Supports +, -, *, /, %, ^, "
            "sqrt(), sin(), cos(), tan(), asin(), acos(), atan(), log(), ln(), "
            "abs(), ceil(), floor(), round(), pow(), pi, e"
        ),
    )
    operation: CalculatorOperation | None = None
    a: float | None = Field(default=None, description="First operand")
    b: float | None = Field(default=None, description="Second operand")

    @field_validator("expression")
    @classmethod
    def _check_expression(cls, value: str | None) -> str | None:
        if value is not None:
            parse_expression(value)
        return value

    @model_validator(mode="after")
    def _one_form(self) -> "CalculatorInput":
        structured = self.operation is not None or self.a is not None or self.b is not None
        if self.expression is not None and structured:
            raise ValueError("provide either expression or operation with a and b, not both")
        if self.expression is None:
            if self.operation is None or self.a is None or self.b is None:
                raise ValueError("provide an expression, or an operation with a and b")
        return self


class CalculatorOutput(ToolOutputModel):
    result: Union[int, float]


def execute_calculator(payload: CalculatorInput) -> CalculatorOutput:
    if payload.expression is not None:
        value = evaluate(parse_expression(payload.expression))
    else:
        value = _apply(_OPERATION_FUNCTIONS[payload.operation], payload.a, payload.b)
    if value == 0:
        value = 0.0
    return CalculatorOutput(result=normalize_number(value))


class CalculatorTool(Tool):
    """Exposes the calculator through the tool contract."""

    name = "calculator"
    description = (
        "Evaluate mathematical expressions using natural syntax "
        "(e.g., '2 + 3 * 4', 'sin(pi/4)', 'sqrt(16)') or a single "
        "operation on two operands."
    )
    input_model = CalculatorInput
    output_model = CalculatorOutput

    async def execute(self, arguments: CalculatorInput, context: CallContext) -> CalculatorOutput:
        return execute_calculator(arguments)

    def summarize(self, output: CalculatorOutput) -> str:
        if isinstance(output.result, int):
            return str(output.result)
        return format(output.result, ".10g")
