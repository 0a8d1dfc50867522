"""AST Nodes - parsed directives and expression trees

Two families of nodes are defined here:
- Directive dataclasses, one per DirectiveKind, produced by DirectiveParser
  from the inner text of a {{...}} span
- ExprNode trees for math directives, switch conditions and document
  conditionals:
  - LiteralNode: numbers, quoted strings and bare words
  - VariableNode: $name references ($ alone is the switch subject)
  - PlaceholderNode: @name / @name.prop references
  - UnaryNode: -, +, !
  - BinaryNode: arithmetic, comparison, contains/matches, && and ||
  - FunctionCallNode: floor, ceil, round, abs, min, max

ExprNode.evaluate() takes a scope object exposing resolve_variable(name),
resolve_placeholder(name, prop) and a subject attribute.
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, List, Optional, Tuple, Union

from .errors import ParseError


Value = Union[float, str, bool]


class DirectiveKind(Enum):
    """Closed set of directive kinds"""
    DICE = "dice"
    MATH = "math"
    TABLE = "table"
    MULTI_ROLL = "multi_roll"
    UNIQUE = "unique"
    AGAIN = "again"
    VARIABLE = "variable"
    CAPTURE_ACCESS = "capture_access"
    CAPTURE_SHARED = "capture_shared"
    PLACEHOLDER = "placeholder"
    CAPTURE = "capture"
    COLLECT = "collect"
    SWITCH = "switch"


DEFAULT_SEPARATOR = ", "


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def format_number(value: float) -> str:
    """Render a number, dropping the decimal point for integral values"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if float(value).is_integer():
        return str(int(value))
    return str(round(float(value), 10))


def to_text(value: Value) -> str:
    if isinstance(value, str):
        return value
    return format_number(value)


def to_number(value: Value, strict: bool = True) -> float:
    """Coerce a value to a number

    In strict mode (math) a non-numeric string raises ParseError; otherwise
    (ordering comparisons) it becomes NaN so every comparison is false.
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value.strip())
    except ValueError:
        if strict:
            raise ParseError(f"Non-numeric operand '{value}'")
        return float("nan")


def is_truthy(value: Value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return value.strip() not in ("", "0", "false")


# ---------------------------------------------------------------------------
# Expression nodes
# ---------------------------------------------------------------------------

class NodeType(Enum):
    """Types of expression nodes"""
    LITERAL = "LITERAL"
    VARIABLE = "VARIABLE"
    PLACEHOLDER = "PLACEHOLDER"
    UNARY = "UNARY"
    BINARY = "BINARY"
    FUNCTION_CALL = "FUNCTION_CALL"


class ExprNode(ABC):
    """Base class for all expression nodes"""

    def __init__(self, node_type: NodeType, position: int = 0):
        self.node_type = node_type
        self.position = position

    @abstractmethod
    def evaluate(self, scope) -> Value:
        """Evaluate this node against a scope"""

    @abstractmethod
    def __str__(self) -> str:
        pass

    def __repr__(self) -> str:
        return self.__str__()

    def get_dependencies(self) -> List[str]:
        """References ($name, @name.prop) this expression reads"""
        return []


class LiteralNode(ExprNode):
    """Numbers, quoted strings and bare words"""

    def __init__(self, value: Union[float, str], position: int = 0):
        super().__init__(NodeType.LITERAL, position)
        self.value = value

    def evaluate(self, scope) -> Value:
        return self.value

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return f'"{self.value}"'
        return format_number(self.value)


class VariableNode(ExprNode):
    """$name reference; an empty name refers to the switch subject"""

    def __init__(self, name: str, position: int = 0):
        super().__init__(NodeType.VARIABLE, position)
        self.name = name

    def evaluate(self, scope) -> Value:
        if not self.name:
            return getattr(scope, "subject", None) or ""
        return scope.resolve_variable(self.name)

    def get_dependencies(self) -> List[str]:
        return [f"${self.name}"]

    def __str__(self) -> str:
        return f"${self.name}"


class PlaceholderNode(ExprNode):
    """@name or @name.prop reference"""

    def __init__(self, path: str, position: int = 0):
        super().__init__(NodeType.PLACEHOLDER, position)
        name, _, prop = path.partition(".")
        self.name = name
        self.prop = prop or None

    def evaluate(self, scope) -> Value:
        return scope.resolve_placeholder(self.name, self.prop)

    def get_dependencies(self) -> List[str]:
        return [str(self)]

    def __str__(self) -> str:
        return f"@{self.name}" + (f".{self.prop}" if self.prop else "")


class UnaryNode(ExprNode):
    """Unary operations (+expr, -expr, !expr)"""

    def __init__(self, operator: str, operand: ExprNode, position: int = 0):
        super().__init__(NodeType.UNARY, position)
        self.operator = operator
        self.operand = operand

    def evaluate(self, scope) -> Value:
        value = self.operand.evaluate(scope)
        if self.operator == "!":
            return not is_truthy(value)
        if self.operator == "-":
            return -to_number(value)
        if self.operator == "+":
            return to_number(value)
        raise ParseError(f"Unknown unary operator: {self.operator}")

    def get_dependencies(self) -> List[str]:
        return self.operand.get_dependencies()

    def __str__(self) -> str:
        return f"({self.operator}{self.operand})"


class BinaryNode(ExprNode):
    """Binary operations with short-circuit && and ||"""

    def __init__(self, operator: str, left: ExprNode, right: ExprNode, position: int = 0):
        super().__init__(NodeType.BINARY, position)
        self.operator = operator
        self.left = left
        self.right = right

    def evaluate(self, scope) -> Value:
        op = self.operator

        if op == "&&":
            return is_truthy(self.left.evaluate(scope)) and is_truthy(self.right.evaluate(scope))
        if op == "||":
            return is_truthy(self.left.evaluate(scope)) or is_truthy(self.right.evaluate(scope))

        left = self.left.evaluate(scope)
        right = self.right.evaluate(scope)

        if op in ("==", "="):
            return to_text(left) == to_text(right)
        if op == "!=":
            return to_text(left) != to_text(right)
        if op == "contains":
            return to_text(right).lower() in to_text(left).lower()
        if op == "matches":
            try:
                return re.search(to_text(right), to_text(left), re.IGNORECASE) is not None
            except re.error:
                return False

        if op in ("<", "<=", ">", ">="):
            a = to_number(left, strict=False)
            b = to_number(right, strict=False)
            if op == "<":
                return a < b
            if op == "<=":
                return a <= b
            if op == ">":
                return a > b
            return a >= b

        a = to_number(left)
        b = to_number(right)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0:
                raise ParseError("Division by zero", str(self))
            return a / b
        if op == "%":
            if b == 0:
                raise ParseError("Modulo by zero", str(self))
            return a % b

        raise ParseError(f"Unknown binary operator: {op}")

    def get_dependencies(self) -> List[str]:
        return self.left.get_dependencies() + self.right.get_dependencies()

    def __str__(self) -> str:
        return f"({self.left} {self.operator} {self.right})"


class FunctionCallNode(ExprNode):
    """Built-in math functions (floor, ceil, round, abs, min, max)"""

    ARITY = {
        "floor": (1, 1),
        "ceil": (1, 1),
        "round": (1, 2),
        "abs": (1, 1),
        "min": (1, None),
        "max": (1, None),
    }

    def __init__(self, name: str, args: List[ExprNode], position: int = 0):
        super().__init__(NodeType.FUNCTION_CALL, position)
        self.name = name.lower()
        self.args = args

        if self.name not in self.ARITY:
            raise ParseError(f"Unknown function: {name}")
        low, high = self.ARITY[self.name]
        if len(args) < low or (high is not None and len(args) > high):
            raise ParseError(f"{self.name}() called with {len(args)} argument(s)")

    def evaluate(self, scope) -> Value:
        values = [to_number(arg.evaluate(scope)) for arg in self.args]

        if self.name == "floor":
            return float(math.floor(values[0]))
        if self.name == "ceil":
            return float(math.ceil(values[0]))
        if self.name == "abs":
            return abs(values[0])
        if self.name == "min":
            return min(values)
        if self.name == "max":
            return max(values)
        # round half away from zero
        digits = int(values[1]) if len(values) > 1 else 0
        factor = 10 ** digits
        return math.copysign(math.floor(abs(values[0]) * factor + 0.5), values[0]) / factor

    def get_dependencies(self) -> List[str]:
        deps: List[str] = []
        for arg in self.args:
            deps.extend(arg.get_dependencies())
        return deps

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


# ---------------------------------------------------------------------------
# Directives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RollCount:
    """How many times a multi-roll repeats: literal, $variable or dice"""
    literal: Optional[int] = None
    variable: Optional[str] = None
    dice: Optional[Any] = None  # DiceSpec

    @property
    def source(self) -> str:
        if self.variable is not None:
            return "variable"
        if self.dice is not None:
            return "dice"
        return "literal"

    def __str__(self) -> str:
        if self.variable is not None:
            return f"${self.variable}"
        if self.dice is not None:
            return str(self.dice)
        return str(self.literal)


@dataclass(frozen=True)
class Directive:
    """Base of all parsed directives; raw is the inner text of the span"""
    kind: ClassVar[DirectiveKind]
    raw: str


@dataclass(frozen=True)
class DiceDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.DICE
    spec: Any = None  # DiceSpec


@dataclass(frozen=True)
class MathDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.MATH
    expression: Optional[ExprNode] = None


@dataclass(frozen=True)
class TableDirective(Directive):
    """Table or template reference, optionally a named instance"""
    kind: ClassVar[DirectiveKind] = DirectiveKind.TABLE
    ref: str = ""
    instance: Optional[str] = None


@dataclass(frozen=True)
class MultiRollDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.MULTI_ROLL
    count: RollCount = field(default_factory=RollCount)
    ref: str = ""
    unique: bool = False
    separator: str = DEFAULT_SEPARATOR


@dataclass(frozen=True)
class UniqueDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.UNIQUE
    count: int = 1
    ref: str = ""
    separator: str = DEFAULT_SEPARATOR


@dataclass(frozen=True)
class AgainDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.AGAIN
    count: int = 1
    unique: bool = False
    separator: str = DEFAULT_SEPARATOR


@dataclass(frozen=True)
class VariableDirective(Directive):
    """$name or $alias.name"""
    kind: ClassVar[DirectiveKind] = DirectiveKind.VARIABLE
    name: str = ""
    alias: Optional[str] = None


@dataclass(frozen=True)
class CaptureAccessDirective(Directive):
    """$var[i], $var.count, $var.value, $var|"sep" """
    kind: ClassVar[DirectiveKind] = DirectiveKind.CAPTURE_ACCESS
    name: str = ""
    index: Optional[int] = None
    attribute: Optional[str] = None  # "count" | "value"
    separator: Optional[str] = None


@dataclass(frozen=True)
class CaptureSharedDirective(Directive):
    """$var.@prop chains, optionally indexed: $var[1].@a.@b"""
    kind: ClassVar[DirectiveKind] = DirectiveKind.CAPTURE_SHARED
    name: str = ""
    index: Optional[int] = None
    properties: Tuple[str, ...] = ()
    separator: Optional[str] = None


@dataclass(frozen=True)
class PlaceholderDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.PLACEHOLDER
    name: str = ""
    prop: Optional[str] = None


@dataclass(frozen=True)
class CaptureDirective(Directive):
    """N*[unique*]id >> $var"""
    kind: ClassVar[DirectiveKind] = DirectiveKind.CAPTURE
    count: RollCount = field(default_factory=RollCount)
    ref: str = ""
    variable: str = ""
    unique: bool = False
    silent: bool = False
    separator: str = DEFAULT_SEPARATOR


@dataclass(frozen=True)
class CollectDirective(Directive):
    """collect:$var.@prop / .value / .@description"""
    kind: ClassVar[DirectiveKind] = DirectiveKind.COLLECT
    variable: str = ""
    prop: str = "value"
    from_sets: bool = False
    unique: bool = False
    separator: str = DEFAULT_SEPARATOR


@dataclass(frozen=True)
class BranchResult:
    """Either a literal string or a nested directive"""
    literal: Optional[str] = None
    directive: Optional[Directive] = None

    def __str__(self) -> str:
        if self.directive is not None:
            return self.directive.raw
        return f'"{self.literal or ""}"'


@dataclass(frozen=True)
class SwitchBranch:
    condition: ExprNode
    result: BranchResult


@dataclass(frozen=True)
class SwitchDirective(Directive):
    kind: ClassVar[DirectiveKind] = DirectiveKind.SWITCH
    subject: Optional[Directive] = None
    branches: Tuple[SwitchBranch, ...] = ()
    default: Optional[BranchResult] = None


DIRECTIVE_TYPES = (
    DiceDirective, MathDirective, TableDirective, MultiRollDirective,
    UniqueDirective, AgainDirective, VariableDirective, CaptureAccessDirective,
    CaptureSharedDirective, PlaceholderDirective, CaptureDirective,
    CollectDirective, SwitchDirective,
)
