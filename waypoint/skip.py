"""Evaluation of skip conditions attached to workflow tasks."""

from __future__ import annotations

import ast
import logging
import operator
from typing import Any, Callable, Dict, Mapping, Optional

from .constants import WORKFLOW_DATA_BINDING
from .errors import SkipEvaluationError

logger = logging.getLogger(__name__)

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
}

_CONSTANT_NAMES = {"True": True, "False": False, "None": None, "true": True, "false": False}


def build_bindings(
    wizard_inputs: Mapping[str, Any], shared_data: Mapping[str, Any]
) -> Dict[str, Any]:
    """Names visible to a skip condition.

    Wizard inputs are bound directly by name; the shared data snapshot is
    available as ``WorkflowData`` and ``workflow_data``.
    """
    bindings = dict(wizard_inputs)
    snapshot = dict(shared_data)
    bindings[WORKFLOW_DATA_BINDING] = snapshot
    bindings["workflow_data"] = snapshot
    return bindings


class _Interpreter:
    """Walks a parsed expression, allowing only side-effect free nodes."""

    def __init__(self, bindings: Mapping[str, Any]) -> None:
        self._bindings = bindings

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"_visit_{type(node).__name__}", None)
        if method is None:
            raise SkipEvaluationError(
                f"Unsupported syntax in skip condition: {type(node).__name__}"
            )
        return method(node)

    def _visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def _visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._bindings:
            return self._bindings[node.id]
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        raise SkipEvaluationError(f"Unknown name '{node.id}' in skip condition")

    def _visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def _visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise SkipEvaluationError("Unsupported unary operator in skip condition")
        return op(self.visit(node.operand))

    def _visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise SkipEvaluationError("Unsupported operator in skip condition")
        return op(self.visit(node.left), self.visit(node.right))

    def _visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            op = _COMPARE_OPS[type(op_node)]
            if not op(left, right):
                return False
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def _visit_Subscript(self, node: ast.Subscript) -> Any:
        container = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return container[key]
        except (KeyError, IndexError, TypeError) as exc:
            raise SkipEvaluationError(f"Cannot look up {key!r}: {exc}") from exc

    def _visit_List(self, node: ast.List) -> list:
        return [self.visit(element) for element in node.elts]

    def _visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(element) for element in node.elts)

    def _visit_Set(self, node: ast.Set) -> set:
        return {self.visit(element) for element in node.elts}

    def _visit_Dict(self, node: ast.Dict) -> dict:
        result: dict[Any, Any] = {}
        for key_node, value_node in zip(node.keys, node.values, strict=True):
            if key_node is None:
                raise SkipEvaluationError("Dict unpacking is not allowed in skip conditions")
            result[self.visit(key_node)] = self.visit(value_node)
        return result

    def _visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise SkipEvaluationError("Only len/str/int/float/bool/min/max/any/all may be called")
        if node.keywords:
            raise SkipEvaluationError("Keyword arguments are not allowed in skip conditions")
        args = [self.visit(arg) for arg in node.args]
        return SAFE_FUNCTIONS[node.func.id](*args)


class SkipConditionEvaluator:
    """Decides whether a task should be bypassed before it runs.

    Conditions are Python boolean expressions over the bindings, for example
    ``Environment == 'dev' and 'token' in WorkflowData``. Attribute access and
    arbitrary calls are rejected. Any evaluation problem is logged and treated
    as ``False`` so the task still executes.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    def evaluate(self, expression: Optional[str], bindings: Mapping[str, Any]) -> bool:
        if not expression or not expression.strip():
            return False
        try:
            result = self.evaluate_strict(expression, bindings)
        except Exception as exc:
            self._logger.warning(
                f"Failed to evaluate skip condition {expression!r}: {exc}"
            )
            return False
        return result

    def evaluate_strict(self, expression: str, bindings: Mapping[str, Any]) -> bool:
        """Evaluate ``expression`` and raise :class:`SkipEvaluationError` on problems."""
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as exc:
            raise SkipEvaluationError(
                f"Invalid skip condition syntax at offset {exc.offset}: {exc.msg}"
            ) from exc

        try:
            value = _Interpreter(bindings).visit(tree)
        except SkipEvaluationError:
            raise
        except Exception as exc:
            raise SkipEvaluationError(str(exc)) from exc
        return _truthy(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)
