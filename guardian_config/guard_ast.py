"""
Restricted AST for policy condition and approver expressions.

Step ``when`` conditions and expression approver rules must use a fixed
operator set.  This module parses and validates expressions at policy load
time, rejecting anything that could execute arbitrary code.

Allowed:
  - Comparisons: <, <=, >, >=, ==, !=, is, is not
  - Logical: and, or, not
  - Field access: context_root.field[.subfield...] and context_root["key"]
    (requester, resource, appeal)
  - Literals: numbers, strings, booleans, None, lists, tuples
  - Functions: len(), lower(), upper()
  - Membership: in, not in
  - Conditional: ternary (a if b else c)

Rejected:
  - imports, arbitrary function calls, method calls, dunder attributes,
    computed subscripts, lambda, comprehensions, arbitrary names
"""

import ast
from dataclasses import dataclass

from guardian_kernel.domain.policy import CONTEXT_ROOTS, EXPRESSION_FUNCTIONS


ALLOWED_FUNCTIONS: frozenset[str] = EXPRESSION_FUNCTIONS

ALLOWED_CONTEXT_ROOTS: frozenset[str] = CONTEXT_ROOTS

# Names allowed as bare identifiers
ALLOWED_NAMES: frozenset[str] = frozenset(
    {"True", "False", "None"} | ALLOWED_CONTEXT_ROOTS
)


@dataclass(frozen=True)
class GuardASTError:
    """A validation error found in an expression."""

    expression: str
    message: str
    node_type: str = ""
    lineno: int = 0
    col_offset: int = 0


def validate_expression(expression: str) -> list[GuardASTError]:
    """Validate an expression against the restricted AST.

    Returns a list of errors. Empty list means the expression is valid.
    """
    if not expression or not expression.strip():
        return [GuardASTError(expression=expression, message="Empty expression")]

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return [
            GuardASTError(
                expression=expression,
                message=f"Syntax error: {e.msg}",
                lineno=e.lineno or 0,
                col_offset=e.offset or 0,
            )
        ]

    errors: list[GuardASTError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def _validate_node(
    node: ast.AST, expression: str, errors: list[GuardASTError]
) -> None:
    """Recursively validate an AST node."""

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed unary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if not isinstance(
                op,
                (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
                 ast.In, ast.NotIn, ast.Is, ast.IsNot),
            ):
                errors.append(
                    GuardASTError(
                        expression=expression,
                        message=f"Disallowed comparison: {type(op).__name__}",
                        node_type=type(op).__name__,
                    )
                )

    elif isinstance(node, ast.BinOp):
        # Arithmetic for duration thresholds
        if isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div)):
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed binary operator: {type(node.op).__name__}",
                    node_type=type(node.op).__name__,
                )
            )

    elif isinstance(node, ast.Call):
        if (
            isinstance(node.func, ast.Name)
            and node.func.id in ALLOWED_FUNCTIONS
            and len(node.args) == 1
            and not node.keywords
        ):
            _validate_node(node.args[0], expression, errors)
        else:
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=(
                        f"Disallowed function call: {_get_name(node.func)}. "
                        f"Only {', '.join(sorted(ALLOWED_FUNCTIONS))} with one "
                        "argument are allowed."
                    ),
                    node_type="Call",
                )
            )

    elif isinstance(node, (ast.Attribute, ast.Subscript)):
        _validate_path(node, expression, errors)

    elif isinstance(node, ast.Name):
        if node.id not in ALLOWED_NAMES:
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed name: {node.id}",
                    node_type="Name",
                )
            )

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            errors.append(
                GuardASTError(
                    expression=expression,
                    message=f"Disallowed constant type: {type(node.value).__name__}",
                    node_type="Constant",
                )
            )

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_node(elt, expression, errors)

    elif isinstance(node, ast.IfExp):
        _validate_node(node.test, expression, errors)
        _validate_node(node.body, expression, errors)
        _validate_node(node.orelse, expression, errors)

    elif isinstance(node, ast.Lambda):
        errors.append(
            GuardASTError(
                expression=expression,
                message="Lambda expressions are not allowed",
                node_type="Lambda",
            )
        )

    else:
        errors.append(
            GuardASTError(
                expression=expression,
                message=f"Disallowed AST node type: {type(node).__name__}",
                node_type=type(node).__name__,
            )
        )


def _validate_path(
    node: ast.AST, expression: str, errors: list[GuardASTError]
) -> None:
    """Validate root.a.b["c"] style access down to a context root."""
    current = node
    while isinstance(current, (ast.Attribute, ast.Subscript)):
        if isinstance(current, ast.Attribute):
            if current.attr.startswith("_"):
                errors.append(
                    GuardASTError(
                        expression=expression,
                        message=f"Disallowed private attribute: {current.attr}",
                        node_type="Attribute",
                    )
                )
                return
        else:
            key = current.slice
            if not (
                isinstance(key, ast.Constant) and isinstance(key.value, (str, int))
            ):
                errors.append(
                    GuardASTError(
                        expression=expression,
                        message="Subscripts must be string or integer literals",
                        node_type="Subscript",
                    )
                )
                return
        current = current.value

    if not (isinstance(current, ast.Name) and current.id in ALLOWED_CONTEXT_ROOTS):
        errors.append(
            GuardASTError(
                expression=expression,
                message=(
                    f"Disallowed attribute access: {_get_name(node)}. "
                    f"Paths must start at {', '.join(sorted(ALLOWED_CONTEXT_ROOTS))}."
                ),
                node_type=type(node).__name__,
            )
        )


def _get_name(node: ast.AST) -> str:
    """Extract a human-readable name from an AST node."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    if isinstance(node, ast.Subscript):
        return f"{_get_name(node.value)}[...]"
    return type(node).__name__
