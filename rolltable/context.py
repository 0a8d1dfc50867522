"""Evaluation Context - all mutable state of one generation run

One EvaluationContext is created per public call and threaded explicitly
through the evaluator, so separate calls never share state:
- recursion depth counter and the chain of what is being rolled
- shared variables (lazy, memoized, ordered, scoped)
- capture variables from '>> $var' directives
- placeholders published by table rolls, named instances
- stack of the tables/entries currently being rolled
- entry descriptions, the trace builder and the random generator
"""

import random
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

from .config import EngineConfig
from .dice import DiceRoller
from .errors import DeclarationError, DepthExceededError
from .logging_config import get_logger
from .models import CaptureItem, CaptureVariable
from .selection import SelectionEngine
from .trace import TraceBuilder


logger = get_logger(__name__)

SharedValue = Union[str, CaptureItem]
SetValue = Union[str, CaptureItem]


@dataclass
class SharedDeclaration:
    name: str
    pattern: str
    position: int
    capture_aware: bool = False


class SharedScope:
    """One level of shared variable declarations (document, table or template)"""

    def __init__(self, owner: str, declarations: Optional[Dict[str, str]] = None,
                 document_level: bool = False, collection_id: str = ""):
        self.owner = owner
        self.collection_id = collection_id
        self.document_level = document_level
        self.declarations: "OrderedDict[str, SharedDeclaration]" = OrderedDict()
        self.values: Dict[str, SharedValue] = {}
        for key, pattern in (declarations or {}).items():
            self.declare(key, pattern)

    def declare(self, key: str, pattern: str):
        capture_aware = key.startswith("$")
        name = key[1:] if capture_aware else key
        if name in self.declarations:
            raise DeclarationError(
                f"Shared variable '{name}' is declared twice in {self.owner}", name
            )
        self.declarations[name] = SharedDeclaration(
            name, pattern, len(self.declarations), capture_aware
        )

    def __contains__(self, name: str) -> bool:
        return name in self.declarations

    def __repr__(self) -> str:
        return f"SharedScope({self.owner}, {list(self.declarations)})"


# evaluates a declaration's pattern and returns its value
SharedEvaluator = Callable[[SharedScope, SharedDeclaration], SharedValue]


class SharedVariableStore:
    """Lazily evaluated, memoized shared variables

    Declarations keep their order. While a variable is being evaluated,
    referencing a variable of the same scope declared after it (or itself)
    raises DeclarationError; so does shadowing a document-level name or a
    static variable from a table or template scope.
    """

    def __init__(self, statics: Optional[Dict[str, str]] = None):
        self.statics = statics or {}
        self._scopes: List[SharedScope] = []
        self._evaluating: List[Tuple[SharedScope, SharedDeclaration]] = []
        self.evaluator: Optional[SharedEvaluator] = None

    @property
    def document_scope(self) -> Optional[SharedScope]:
        return self._scopes[0] if self._scopes else None

    def push_document_scope(self, declarations: Dict[str, str], collection_id: str,
                            extra: Optional[Dict[str, str]] = None) -> SharedScope:
        scope = SharedScope("document", declarations, document_level=True,
                            collection_id=collection_id)
        for key, pattern in (extra or {}).items():
            scope.declare(key, pattern)
        for name in scope.declarations:
            if name in self.statics:
                raise DeclarationError(
                    f"Shared variable '{name}' shadows a static variable", name
                )
        self._scopes.insert(0, scope)
        return scope

    @contextmanager
    def scoped(self, owner: str, declarations: Optional[Dict[str, str]],
               collection_id: str = "") -> Iterator[Optional[SharedScope]]:
        """Push a table/template scope for the duration of the block"""
        if not declarations:
            yield None
            return

        kept: Dict[str, str] = {}
        for key, pattern in declarations.items():
            name = key[1:] if key.startswith("$") else key
            document = self.document_scope
            if document is not None and name in document:
                raise DeclarationError(
                    f"Shared variable '{name}' in {owner} shadows a document-level shared variable",
                    name,
                )
            if name in self.statics:
                raise DeclarationError(
                    f"Shared variable '{name}' in {owner} shadows a static variable", name
                )
            if any(name in scope for scope in self._scopes):
                # an enclosing table scope already set it
                continue
            kept[key] = pattern

        scope = SharedScope(owner, kept, collection_id=collection_id)
        self._scopes.append(scope)
        try:
            yield scope
        finally:
            self._scopes.remove(scope)

    def is_declared(self, name: str) -> bool:
        return any(name in scope for scope in self._scopes)

    def get(self, name: str) -> Optional[SharedValue]:
        """Value of a shared variable, evaluating it on first use

        Returns None when no visible scope declares the name.
        """
        for scope in reversed(self._scopes):
            declaration = scope.declarations.get(name)
            if declaration is None:
                continue
            # ordering holds even when the later variable is already memoized
            self._check_reference(scope, declaration)
            if name in scope.values:
                return scope.values[name]
            return self._evaluate(scope, declaration)
        return None

    def _check_reference(self, scope: SharedScope, declaration: SharedDeclaration):
        for active_scope, active in reversed(self._evaluating):
            if active_scope is not scope:
                continue
            if active.name == declaration.name:
                raise DeclarationError(
                    f"Shared variable '{declaration.name}' references itself", declaration.name
                )
            if declaration.position > active.position:
                raise DeclarationError(
                    f"Shared variable '{active.name}' references '{declaration.name}' "
                    f"before it is declared",
                    declaration.name,
                )
            break

    def _evaluate(self, scope: SharedScope, declaration: SharedDeclaration) -> SharedValue:
        if self.evaluator is None:
            raise RuntimeError("SharedVariableStore has no evaluator")

        # a variable sees only its own scope and the ones outside it
        saved = self._scopes
        self._scopes = saved[:saved.index(scope) + 1]
        self._evaluating.append((scope, declaration))
        try:
            value = self.evaluator(scope, declaration)
        finally:
            self._evaluating.pop()
            self._scopes = saved

        scope.values[declaration.name] = value
        logger.debug(f"Shared variable '{declaration.name}' evaluated in {scope.owner}")
        return value

    def assign(self, name: str, value: SharedValue):
        """Set a document-level shared value directly, bypassing evaluation"""
        scope = self.document_scope
        if scope is None:
            scope = SharedScope("document", document_level=True)
            self._scopes.insert(0, scope)
        if name not in scope:
            scope.declare(name, "")
        scope.values[name] = value

    def snapshot(self) -> Dict[str, SharedValue]:
        values: Dict[str, SharedValue] = {}
        for scope in self._scopes:
            values.update(scope.values)
        return values


class CaptureStore:
    """Capture variables created by '>> $var' directives"""

    def __init__(self):
        self._variables: Dict[str, CaptureVariable] = {}

    def set(self, name: str, variable: CaptureVariable):
        if name in self._variables:
            logger.warning(f"Capture variable '${name}' overwritten")
        self._variables[name] = variable

    def get(self, name: str) -> Optional[CaptureVariable]:
        return self._variables.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def to_dict(self) -> Dict[str, dict]:
        return {name: var.model_dump() for name, var in self._variables.items()}

    def items(self):
        return self._variables.items()


@dataclass
class RollFrame:
    """A table roll in progress"""
    table_id: str
    collection_id: str
    entry_id: Optional[str] = None
    description: Optional[str] = None
    table: object = None  # resolved table the entry came from


@dataclass
class DescriptionRecord:
    table_name: str
    table_id: str
    rolled_value: str
    description: str
    depth: int

    def to_dict(self) -> dict:
        return {
            "tableName": self.table_name,
            "tableId": self.table_id,
            "rolledValue": self.rolled_value,
            "description": self.description,
            "depth": self.depth,
        }


@dataclass
class EvaluationContext:
    """Isolated mutable state for one evaluation"""
    config: EngineConfig
    collection_id: str
    rng: random.Random = field(default_factory=random.Random)
    trace: TraceBuilder = field(default_factory=TraceBuilder)
    statics: Dict[str, str] = field(default_factory=dict)

    depth: int = 0
    chain: List[str] = field(default_factory=list)
    captures: CaptureStore = field(default_factory=CaptureStore)
    placeholders: Dict[str, Dict[str, SetValue]] = field(default_factory=dict)
    instances: Dict[str, str] = field(default_factory=dict)
    frames: List[RollFrame] = field(default_factory=list)
    descriptions: List[DescriptionRecord] = field(default_factory=list)
    set_guard: Set[str] = field(default_factory=set)

    def __post_init__(self):
        self.dice = DiceRoller(self.rng, self.config.max_exploding_dice)
        self.selection = SelectionEngine(self.rng)
        self.shared = SharedVariableStore(self.statics)

    @contextmanager
    def descend(self, label: str):
        """Count one level of recursion; the counter is restored on every exit"""
        self.depth += 1
        self.chain.append(label)
        try:
            if self.depth > self.config.max_recursion_depth:
                raise DepthExceededError(
                    "Recursion depth", self.config.max_recursion_depth, self.chain
                )
            yield self.depth
        finally:
            self.depth -= 1
            self.chain.pop()

    @contextmanager
    def rolling(self, frame: RollFrame):
        self.frames.append(frame)
        try:
            yield frame
        finally:
            self.frames.pop()

    @property
    def current_frame(self) -> Optional[RollFrame]:
        return self.frames[-1] if self.frames else None

    # -- placeholders --------------------------------------------------------

    def merge_placeholders(self, name: str, sets: Dict[str, SetValue]):
        self.placeholders.setdefault(name, {}).update(sets)

    def get_placeholder(self, name: str, prop: Optional[str] = None) -> Optional[str]:
        sets = self.placeholders.get(name)
        if sets is None:
            return None
        value = sets.get(prop or "value")
        if isinstance(value, CaptureItem):
            return value.value
        return value

    # -- descriptions --------------------------------------------------------

    def add_description(self, table_name: str, table_id: str, rolled_value: str,
                        description: str):
        self.descriptions.append(
            DescriptionRecord(table_name, table_id, rolled_value, description, self.depth)
        )

    def sorted_descriptions(self) -> List[DescriptionRecord]:
        return sorted(self.descriptions, key=lambda record: record.depth)
