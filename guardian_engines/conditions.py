"""
guardian_engines.conditions -- Restricted expression evaluator.

Responsibility:
    Evaluate policy expressions (step activation conditions and approver
    rules) against an appeal's frozen evaluation context.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import guardian_kernel/domain/ types and kernel exceptions.

Expression language:
    A subset of Python expressions, interpreted node by node (never
    ``eval``):
      - Comparisons: <, <=, >, >=, ==, !=, is, is not, in, not in
      - Logical: and, or, not (short-circuit, Python truthiness)
      - Arithmetic: +, -, *, / and unary minus
      - Literals: numbers, strings, booleans, None, lists, tuples
      - Ternary: a if cond else b
      - Field access: ``requester.*``, ``resource.*``, ``appeal.*`` with
        dotted attributes and constant ``[...]`` subscripts at any depth
      - Functions: len(x), lower(s), upper(s)

Failure modes:
    - InvalidExpressionError: syntax error, disallowed construct, unknown
      root name, or an operation the operands do not support.
    - AttributeMissingError: a referenced path is absent from the context.
      Absence is never coerced to False.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import Any

from guardian_kernel.domain.policy import (
    CONTEXT_ROOTS,
    EXPRESSION_FUNCTIONS,
    StepTemplate,
    is_expression_rule,
)
from guardian_kernel.exceptions import (
    ApproverResolutionError,
    AttributeMissingError,
    InvalidExpressionError,
)

_COMPARE_OPS: dict[type, Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BIN_OPS: dict[type, Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}


def _lower(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"lower() expects a string, got {type(value).__name__}")
    return value.lower()


def _upper(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"upper() expects a string, got {type(value).__name__}")
    return value.upper()


_FUNCTIONS: dict[str, Any] = {"len": len, "lower": _lower, "upper": _upper}

_MISSING = object()


@lru_cache(maxsize=1024)
def _parse(expression: str) -> ast.expr:
    try:
        return ast.parse(expression.strip(), mode="eval").body
    except SyntaxError as e:
        raise InvalidExpressionError(expression, [f"Syntax error: {e.msg}"]) from None


class _Interpreter:
    """Walks one parsed expression against one context."""

    def __init__(self, expression: str, context: Mapping[str, Any]):
        self._expression = expression
        self._context = context

    def invalid(self, message: str) -> InvalidExpressionError:
        return InvalidExpressionError(self._expression, [message])

    def eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            if not isinstance(node.value, (int, float, str, bool, type(None))):
                raise self.invalid(
                    f"Disallowed constant type: {type(node.value).__name__}"
                )
            return node.value

        if isinstance(node, ast.BoolOp):
            result: Any = None
            for value in node.values:
                result = self.eval(value)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return self._apply(operator.neg, operand)
            raise self.invalid(f"Disallowed unary operator: {type(node.op).__name__}")

        if isinstance(node, ast.Compare):
            left = self.eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                func = _COMPARE_OPS.get(type(op))
                if func is None:
                    raise self.invalid(f"Disallowed comparison: {type(op).__name__}")
                right = self.eval(comparator)
                if not self._apply(func, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BinOp):
            func = _BIN_OPS.get(type(node.op))
            if func is None:
                raise self.invalid(
                    f"Disallowed binary operator: {type(node.op).__name__}"
                )
            return self._apply(func, self.eval(node.left), self.eval(node.right))

        if isinstance(node, ast.IfExp):
            if self.eval(node.test):
                return self.eval(node.body)
            return self.eval(node.orelse)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.eval(elt) for elt in node.elts]

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in EXPRESSION_FUNCTIONS:
                raise self.invalid(f"Disallowed function call: {_dotted(node.func)}")
            if node.keywords or len(node.args) != 1:
                raise self.invalid(f"{node.func.id}() takes exactly one argument")
            return self._apply(_FUNCTIONS[node.func.id], self.eval(node.args[0]))

        if isinstance(node, (ast.Attribute, ast.Subscript, ast.Name)):
            return self._resolve(node)

        raise self.invalid(f"Disallowed AST node type: {type(node).__name__}")

    def _apply(self, func: Any, *args: Any) -> Any:
        try:
            return func(*args)
        except (TypeError, ZeroDivisionError) as e:
            raise self.invalid(f"{type(e).__name__}: {e}") from None

    def _resolve(self, node: ast.AST) -> Any:
        """Resolve a rooted path such as ``requester.groups[0]``."""
        keys: list[Any] = []
        current = node
        while True:
            if isinstance(current, ast.Attribute):
                keys.append(current.attr)
                current = current.value
            elif isinstance(current, ast.Subscript):
                key = current.slice
                if not isinstance(key, ast.Constant) or not isinstance(
                    key.value, (str, int)
                ) or isinstance(key.value, bool):
                    raise self.invalid("Subscripts must be constant strings or integers")
                keys.append(key.value)
                current = current.value
            elif isinstance(current, ast.Name):
                break
            else:
                raise self.invalid(
                    f"Disallowed attribute access on {type(current).__name__}"
                )

        root = current.id
        if root not in CONTEXT_ROOTS:
            raise self.invalid(
                f"Unknown name '{root}'. Only "
                f"{', '.join(sorted(CONTEXT_ROOTS))} may be referenced."
            )

        path = root
        value = self._context.get(root, _MISSING)
        if value is _MISSING:
            raise AttributeMissingError(self._expression, path)
        for key in reversed(keys):
            path = f"{path}.{key}" if isinstance(key, str) else f"{path}[{key}]"
            value = _lookup(value, key)
            if value is _MISSING:
                raise AttributeMissingError(self._expression, path)
        return value


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key, _MISSING)
    if (
        isinstance(key, int)
        and isinstance(container, Sequence)
        and not isinstance(container, str)
    ):
        if -len(container) <= key < len(container):
            return container[key]
    return _MISSING


def _dotted(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_dotted(node.value)}.{node.attr}"
    return type(node).__name__


# =========================================================================
# Public API
# =========================================================================


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` against ``context`` and return its value.

    Args:
        expression: Expression source in the restricted language.
        context: Mapping with ``requester``, ``resource`` and ``appeal`` roots.

    Raises:
        InvalidExpressionError: Disallowed or malformed expression.
        AttributeMissingError: Referenced path absent from ``context``.
    """
    if not expression or not expression.strip():
        raise InvalidExpressionError(expression, ["Empty expression"])
    tree = _parse(expression)
    return _Interpreter(expression, context).eval(tree)


def is_active(template: StepTemplate, context: Mapping[str, Any]) -> bool:
    """Whether a step's activation condition holds.  Empty ``when`` is active."""
    if not template.when.strip():
        return True
    return bool(evaluate(template.when, context))


def resolve_approvers(
    template: StepTemplate, context: Mapping[str, Any],
) -> tuple[str, ...]:
    """Resolve a step's approver rules into a de-duplicated identity tuple.

    Literal rules are used verbatim.  Expression rules must yield a string
    or a list of strings; blank strings are dropped.  Order of first
    appearance is preserved.

    Raises:
        ApproverResolutionError: A rule yielded a non-string value.
        InvalidExpressionError / AttributeMissingError: From evaluation.
    """
    resolved: list[str] = []
    for rule in template.approvers:
        if not is_expression_rule(rule):
            values: list[Any] = [rule.strip()]
        else:
            result = evaluate(rule, context)
            values = list(result) if isinstance(result, (list, tuple)) else [result]
        for value in values:
            if not isinstance(value, str):
                raise ApproverResolutionError(
                    template.name,
                    f"rule {rule!r} produced {type(value).__name__}, expected string",
                )
            identity = value.strip()
            if identity and identity not in resolved:
                resolved.append(identity)
    return tuple(resolved)
