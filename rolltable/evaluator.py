"""Pattern Evaluator - renders patterns by evaluating their directives

Walks the {{...}} spans of a pattern left to right, dispatches each parsed
directive to its handler, and records:
- one trace node per directive, holding the directive's output
- an EvaluatedSegment per literal run and per directive, with source offsets

Table rolls, template expansion, composite delegation and 'again' each count
one level of recursion on the context. Errors propagate; the caller decides
what to surface.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Union

from .ast_nodes import (
    AgainDirective, BranchResult, CaptureAccessDirective, CaptureDirective,
    CaptureSharedDirective, CollectDirective, DEFAULT_SEPARATOR, DiceDirective, Directive,
    DirectiveKind, MathDirective, MultiRollDirective, PlaceholderDirective,
    RollCount, SwitchDirective, TableDirective, UniqueDirective,
    VariableDirective, is_truthy, to_number, to_text,
)
from .context import EvaluationContext, RollFrame, SetValue, SharedDeclaration, SharedScope
from .errors import ParseError, ResolutionError, SelectionError
from .lexer import PatternScanner, extract_expressions
from .logging_config import get_logger
from .models import (
    CaptureItem, CaptureVariable, CollectionTable, CompositeTable, SimpleTable, Template,
)
from .parser import DirectiveParser
from .resolver import AnyTable, ResolvedRef, TableResolver
from .selection import PoolExhausted, Selection


logger = get_logger(__name__)

MATH_ERROR = "[math error]"


NODE_TYPES: Dict[DirectiveKind, str] = {
    DirectiveKind.DICE: "dice_roll",
    DirectiveKind.MATH: "math_eval",
    DirectiveKind.TABLE: "table_ref",
    DirectiveKind.MULTI_ROLL: "multi_roll",
    DirectiveKind.UNIQUE: "unique",
    DirectiveKind.AGAIN: "again",
    DirectiveKind.VARIABLE: "variable_access",
    DirectiveKind.CAPTURE_ACCESS: "capture_access",
    DirectiveKind.CAPTURE_SHARED: "capture_access",
    DirectiveKind.PLACEHOLDER: "placeholder_access",
    DirectiveKind.CAPTURE: "capture",
    DirectiveKind.COLLECT: "collect",
    DirectiveKind.SWITCH: "switch",
}


@dataclass
class EvaluatedSegment:
    """A literal run or an evaluated directive, mapped to source offsets"""
    type: str  # "literal" | "expression" | "conditional"
    text: str
    start: int
    end: int
    raw: str = ""
    expression: str = ""
    kind: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "type": self.type,
            "text": self.text,
            "start": self.start,
            "end": self.end,
            "raw": self.raw,
        }
        if self.type != "literal":
            data["expression"] = self.expression
            data["kind"] = self.kind
        return data


@dataclass
class RollOutcome:
    """Result of rolling a table or expanding a template"""
    text: str
    table_id: str = ""
    collection_id: str = ""
    result_type: Optional[str] = None
    assets: Dict[str, str] = field(default_factory=dict)
    placeholders: Dict[str, SetValue] = field(default_factory=dict)
    entry_id: Optional[str] = None
    selection_key: Optional[str] = None
    description: Optional[str] = None

    def to_capture_item(self) -> CaptureItem:
        return CaptureItem(value=self.text, sets=dict(self.placeholders),
                           description=self.description)


@dataclass
class PatternState:
    """Per-pattern memory used by 'again'"""
    again_ref: Optional[str] = None
    again_dice: Optional[object] = None

    def remember_ref(self, ref: str):
        self.again_ref, self.again_dice = ref, None

    def remember_dice(self, spec):
        self.again_ref, self.again_dice = None, spec


class ExprScope:
    """Variable and placeholder lookups for math and condition expressions"""

    def __init__(self, evaluator: "PatternEvaluator", ctx: EvaluationContext,
                 collection_id: str, subject: Optional[str] = None, strict: bool = True):
        self.evaluator = evaluator
        self.ctx = ctx
        self.collection_id = collection_id
        self.subject = subject
        self.strict = strict

    def resolve_variable(self, name: str) -> str:
        try:
            if "." in name:
                head, attr = name.split(".", 1)
                if attr in ("count", "value") and self.evaluator.has_capture_source(head, self.ctx):
                    variable = self.evaluator.capture_variable(head, self.ctx, self.collection_id)
                    if attr == "count":
                        return str(variable.count)
                    return DEFAULT_SEPARATOR.join(item.value for item in variable.items)
                return self.evaluator.lookup_imported(head, attr, self.collection_id)
            return self.evaluator.lookup_variable(name, self.ctx, self.collection_id)
        except ResolutionError:
            if self.strict:
                raise
            return ""

    def resolve_placeholder(self, name: str, prop: Optional[str]) -> str:
        return self.evaluator.placeholder_value(name, prop, self.ctx, self.collection_id)


Handler = Callable[[Directive, EvaluationContext, str, PatternState, object], str]


class PatternEvaluator:
    """Evaluates patterns, tables and templates against a registry"""

    def __init__(self, resolver: TableResolver, parser: Optional[DirectiveParser] = None):
        self.resolver = resolver
        self.parser = parser or DirectiveParser()
        self._handlers: Dict[DirectiveKind, Handler] = {
            DirectiveKind.DICE: self._eval_dice,
            DirectiveKind.MATH: self._eval_math,
            DirectiveKind.TABLE: self._eval_table,
            DirectiveKind.MULTI_ROLL: self._eval_multi_roll,
            DirectiveKind.UNIQUE: self._eval_unique,
            DirectiveKind.AGAIN: self._eval_again,
            DirectiveKind.VARIABLE: self._eval_variable,
            DirectiveKind.CAPTURE_ACCESS: self._eval_capture_access,
            DirectiveKind.CAPTURE_SHARED: self._eval_capture_shared,
            DirectiveKind.PLACEHOLDER: self._eval_placeholder,
            DirectiveKind.CAPTURE: self._eval_capture,
            DirectiveKind.COLLECT: self._eval_collect,
            DirectiveKind.SWITCH: self._eval_switch,
        }
        missing = set(DirectiveKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for directive kinds: {sorted(k.value for k in missing)}")

    # ------------------------------------------------------------------
    # Context setup
    # ------------------------------------------------------------------

    def prepare(self, ctx: EvaluationContext, extra_shared: Optional[Dict[str, str]] = None):
        """Push the document shared scope and wire lazy evaluation"""
        collection = self.resolver.registry.require(ctx.collection_id)
        ctx.shared.evaluator = lambda scope, declaration: self._evaluate_shared(
            scope, declaration, ctx
        )
        ctx.shared.push_document_scope(
            collection.document.shared, ctx.collection_id, extra_shared
        )

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def evaluate_pattern(self, pattern: str, ctx: EvaluationContext, collection_id: str) -> str:
        return self.evaluate_segments(pattern, ctx, collection_id)

    def evaluate_segments(self, pattern: str, ctx: EvaluationContext, collection_id: str,
                          segments: Optional[List[EvaluatedSegment]] = None) -> str:
        """Evaluate a pattern, appending segments to the given list as they complete

        On error the list keeps every segment finished before the failure.
        """
        if segments is None:
            segments = []
        pattern = pattern or ""
        state = PatternState()
        parts: List[str] = []
        last = 0

        for match in PatternScanner(pattern):
            if match.start > last:
                literal = pattern[last:match.start]
                parts.append(literal)
                segments.append(EvaluatedSegment("literal", literal, last, match.start, literal))

            directive = self._parse(match.expression, match.raw, ctx)
            output = self.evaluate_directive(directive, ctx, collection_id, state)
            parts.append(output)
            segments.append(EvaluatedSegment(
                "expression", output, match.start, match.end,
                match.raw, match.expression, directive.kind.value,
            ))
            last = match.end

        if last < len(pattern):
            literal = pattern[last:]
            parts.append(literal)
            segments.append(EvaluatedSegment("literal", literal, last, len(pattern), literal))

        return "".join(parts)

    def _parse(self, expression: str, raw: str, ctx: EvaluationContext) -> Directive:
        try:
            return self.parser.parse(expression)
        except ParseError as e:
            ctx.trace.leaf("parse_error", f"Parse error: {raw}", raw, "", {"error": e.message})
            raise

    def evaluate_directive(self, directive: Directive, ctx: EvaluationContext,
                           collection_id: str, state: Optional[PatternState] = None) -> str:
        """Evaluate one directive inside its own trace node"""
        state = state or PatternState()
        handler = self._handlers[directive.kind]
        logger.debug(f"Evaluating {directive.kind.value} directive '{directive.raw}'")
        with ctx.trace.node(NODE_TYPES[directive.kind], directive.raw, directive.raw,
                            {"kind": directive.kind.value}) as node:
            output = handler(directive, ctx, collection_id, state, node)
            node.value = output
        return output

    # ------------------------------------------------------------------
    # Tables and templates
    # ------------------------------------------------------------------

    def roll_ref(self, ref: str, ctx: EvaluationContext, collection_id: str,
                 exclude: Set[str] = frozenset()) -> RollOutcome:
        resolved = self.resolver.resolve(ref, collection_id)
        return self.roll_resolved(resolved, ctx, exclude)

    def roll_resolved(self, resolved: ResolvedRef, ctx: EvaluationContext,
                      exclude: Set[str] = frozenset()) -> RollOutcome:
        if resolved.is_template:
            return self.roll_template(resolved.definition, ctx, resolved.collection_id)
        return self.roll_table(resolved.definition, ctx, resolved.collection_id, exclude)

    def roll_table(self, table: AnyTable, ctx: EvaluationContext, collection_id: str,
                   exclude: Set[str] = frozenset()) -> RollOutcome:
        with ctx.descend(table.id), \
                ctx.trace.node("table_roll", f"Roll: {table.display_name}", table.id,
                               {"tableType": table.type, "collectionId": collection_id}) as node, \
                ctx.shared.scoped(f"table '{table.id}'", table.shared, collection_id):
            if isinstance(table, CompositeTable):
                outcome = self._roll_composite(table, ctx, collection_id, exclude)
            elif isinstance(table, CollectionTable):
                outcome = self._roll_collection(table, ctx, collection_id, exclude)
            else:
                outcome = self._roll_simple(table, ctx, collection_id, exclude)
            node.value = outcome.text
            node.metadata.update({"entryId": outcome.entry_id, "resultType": outcome.result_type})
        return outcome

    def roll_template(self, template: Template, ctx: EvaluationContext,
                      collection_id: str) -> RollOutcome:
        with ctx.descend(template.id), \
                ctx.trace.node("template_ref", f"Template: {template.display_name}",
                               template.id, {"collectionId": collection_id}) as node, \
                ctx.shared.scoped(f"template '{template.id}'", template.shared, collection_id):
            text = self.evaluate_pattern(template.pattern, ctx, collection_id)
            node.value = text
        return RollOutcome(text, template.id, collection_id, template.result_type)

    def _roll_simple(self, table: SimpleTable, ctx: EvaluationContext, collection_id: str,
                     exclude: Set[str]) -> RollOutcome:
        resolved = self.resolver.resolve_inheritance(table, collection_id)
        selection = ctx.selection.select_simple(resolved, collection_id, exclude)
        return self._realize(selection, resolved, ctx)

    def _roll_composite(self, table: CompositeTable, ctx: EvaluationContext,
                        collection_id: str, exclude: Set[str]) -> RollOutcome:
        source, weight, total = ctx.selection.select_source(table)
        ctx.trace.leaf("composite_select", f"Source: {source.table_id}", table.id,
                       source.table_id, {
                           "sourceTableId": source.table_id,
                           "weight": weight,
                           "totalWeight": total,
                           "probability": weight / total if total else 0.0,
                       })
        outcome = self.roll_ref(source.table_id, ctx, collection_id, exclude)
        outcome.result_type = outcome.result_type or table.result_type
        return outcome

    def _roll_collection(self, table: CollectionTable, ctx: EvaluationContext,
                         collection_id: str, exclude: Set[str]) -> RollOutcome:
        members = self.resolver.collection_members(table, collection_id)
        ctx.trace.leaf("collection_merge", f"Merge: {', '.join(table.collections)}", table.id,
                       len(members), {
                           "members": [m.id for m, _ in members],
                           "poolSize": sum(len(m.entries) for m, _ in members),
                       })
        selection = ctx.selection.select_pooled(members, table.id, exclude)
        source = next(m for m, cid in members
                      if m.id == selection.table_id and cid == selection.collection_id)
        outcome = self._realize(selection, source, ctx)
        outcome.result_type = outcome.result_type or table.result_type
        return outcome

    def _realize(self, selection: Selection, table: SimpleTable,
                 ctx: EvaluationContext) -> RollOutcome:
        """Publish the selected entry's sets and evaluate its value"""
        entry = selection.entry
        collection_id = selection.collection_id
        ctx.trace.leaf("entry_select", f"Selected: {selection.entry_id}", table.id,
                       entry.value, selection.to_dict())

        frame = RollFrame(table.id, collection_id, entry.id, entry.description, table)
        with ctx.rolling(frame):
            merged = {**(table.default_sets or {}), **entry.sets}
            sets = self._evaluate_sets(merged, ctx, collection_id, table.id) if merged else {}
            if sets:
                ctx.merge_placeholders(table.id, sets)
            text = self.evaluate_pattern(entry.value or "", ctx, collection_id)

        if "value" not in sets:
            ctx.merge_placeholders(table.id, {"value": text})

        description = None
        if entry.description:
            description = self.evaluate_pattern(entry.description, ctx, collection_id)
            ctx.add_description(table.display_name, table.id, text, description)

        return RollOutcome(
            text=text,
            table_id=table.id,
            collection_id=collection_id,
            result_type=entry.result_type or table.result_type,
            assets=dict(entry.assets),
            placeholders=sets,
            entry_id=entry.id,
            selection_key=selection.key,
            description=description,
        )

    def _evaluate_sets(self, sets: Dict[str, str], ctx: EvaluationContext,
                       collection_id: str, table_id: str) -> Dict[str, SetValue]:
        evaluated: Dict[str, SetValue] = {}
        for key, value in sets.items():
            if "{{" not in value:
                evaluated[key] = value
                continue

            guard = f"{collection_id}:{table_id}.{key}"
            if guard in ctx.set_guard:
                logger.warning(f"Set '{key}' of table '{table_id}' references itself")
                evaluated[key] = ""
                continue

            ctx.set_guard.add(guard)
            try:
                table_ref = self._single_table_ref(value, collection_id)
                if table_ref is not None:
                    evaluated[key] = self.roll_resolved(table_ref, ctx).to_capture_item()
                else:
                    evaluated[key] = self.evaluate_pattern(value, ctx, collection_id)
            finally:
                ctx.set_guard.discard(guard)
        return evaluated

    def _single_table_ref(self, pattern: str, collection_id: str) -> Optional[ResolvedRef]:
        """The table a pattern consists of, when it is exactly one table reference"""
        matches = extract_expressions(pattern)
        if len(matches) != 1 or pattern.strip() != matches[0].raw:
            return None
        directive = self.parser.parse(matches[0].expression)
        if not isinstance(directive, TableDirective) or directive.instance:
            return None
        resolved = self.resolver.find(directive.ref, collection_id)
        if resolved is None or resolved.is_template:
            return None
        return resolved

    # ------------------------------------------------------------------
    # Repeated draws
    # ------------------------------------------------------------------

    def resolve_count(self, count: RollCount, ctx: EvaluationContext, collection_id: str) -> int:
        if count.literal is not None:
            return count.literal
        if count.dice is not None:
            result = ctx.dice.roll(count.dice)
            ctx.trace.leaf("dice_roll", f"Count: {count.dice}", str(count.dice),
                           result.total, result.to_dict())
            return max(result.total, 0)
        value = self.lookup_variable(count.variable, ctx, collection_id)
        try:
            return max(int(float(value)), 0)
        except ValueError:
            logger.warning(f"Roll count '${count.variable}' is not a number: '{value}', using 1")
            return 1

    def draw_many(self, ref: str, count: int, ctx: EvaluationContext, collection_id: str,
                  unique: bool = False) -> List[RollOutcome]:
        """Roll a table or template several times, optionally without replacement"""
        resolved = self.resolver.resolve(ref, collection_id)
        outcomes: List[RollOutcome] = []
        if resolved.is_template:
            for _ in range(count):
                outcomes.append(self.roll_resolved(resolved, ctx))
            return outcomes

        used: Set[str] = set()
        policy = ctx.config.unique_overflow_behavior
        while len(outcomes) < count:
            try:
                outcome = self.roll_resolved(resolved, ctx, used if unique else frozenset())
            except PoolExhausted:
                if policy == "stop":
                    logger.debug(f"Unique draw from '{ref}' stopped at {len(outcomes)} of {count}")
                    break
                if policy == "cycle" and used:
                    used.clear()
                    continue
                raise SelectionError(
                    f"Requested {count} unique entries from '{ref}' "
                    f"but only {len(outcomes)} are available"
                ) from None
            outcomes.append(outcome)
            if unique and outcome.selection_key:
                used.add(outcome.selection_key)
        return outcomes

    # ------------------------------------------------------------------
    # Directive handlers
    # ------------------------------------------------------------------

    def _eval_dice(self, directive: DiceDirective, ctx, collection_id, state, node) -> str:
        result = ctx.dice.roll(directive.spec)
        node.metadata.update(result.to_dict())
        state.remember_dice(directive.spec)
        return str(result.total)

    def _eval_math(self, directive: MathDirective, ctx, collection_id, state, node) -> str:
        node.metadata["expression"] = str(directive.expression)
        try:
            value = directive.expression.evaluate(ExprScope(self, ctx, collection_id))
            if isinstance(value, str):
                value = to_number(value)
        except ParseError as e:
            # runtime math failures are flagged inline; the pattern goes on
            logger.warning(f"Math error in '{directive.raw}': {e.message}")
            node.error = e.message
            return MATH_ERROR
        return to_text(value)

    def _eval_table(self, directive: TableDirective, ctx, collection_id, state, node) -> str:
        if directive.instance:
            cached = ctx.instances.get(directive.instance)
            if cached is not None:
                node.metadata.update({"instance": directive.instance, "cached": True})
                return cached
            outcome = self.roll_ref(directive.ref, ctx, collection_id)
            ctx.instances[directive.instance] = outcome.text
            node.metadata.update({"instance": directive.instance, "cached": False})
            return outcome.text

        state.remember_ref(directive.ref)
        outcome = self.roll_ref(directive.ref, ctx, collection_id)
        node.metadata.update({"tableId": outcome.table_id, "entryId": outcome.entry_id})
        return outcome.text

    def _eval_multi_roll(self, directive: MultiRollDirective, ctx, collection_id, state, node) -> str:
        count = self.resolve_count(directive.count, ctx, collection_id)
        state.remember_ref(directive.ref)
        outcomes = self.draw_many(directive.ref, count, ctx, collection_id, directive.unique)
        node.metadata.update({
            "tableId": directive.ref,
            "count": count,
            "countSource": directive.count.source,
            "unique": directive.unique,
            "separator": directive.separator,
        })
        return directive.separator.join(o.text for o in outcomes)

    def _eval_unique(self, directive: UniqueDirective, ctx, collection_id, state, node) -> str:
        state.remember_ref(directive.ref)
        outcomes = self.draw_many(directive.ref, directive.count, ctx, collection_id, unique=True)
        node.metadata.update({
            "tableId": directive.ref,
            "requested": directive.count,
            "returned": len(outcomes),
        })
        return directive.separator.join(o.text for o in outcomes)

    def _eval_again(self, directive: AgainDirective, ctx, collection_id, state, node) -> str:
        results: List[str] = []

        if state.again_dice is not None:
            for _ in range(directive.count):
                with ctx.descend("again"):
                    result = ctx.dice.roll(state.again_dice)
                ctx.trace.leaf("dice_roll", f"Dice: {state.again_dice}", str(state.again_dice),
                               result.total, result.to_dict())
                results.append(str(result.total))
            node.metadata["target"] = str(state.again_dice)
            return directive.separator.join(results)

        if state.again_ref is not None:
            with ctx.descend("again"):
                outcomes = self.draw_many(state.again_ref, directive.count, ctx,
                                          collection_id, directive.unique)
            node.metadata["target"] = state.again_ref
            return directive.separator.join(o.text for o in outcomes)

        frame = ctx.current_frame
        if frame is None or frame.table is None:
            logger.warning("{{again}} used outside of a table roll")
            return ""

        node.metadata.update({"target": frame.table_id, "excluded": frame.entry_id})
        excluded: Set[str] = {frame.entry_id} if frame.entry_id else set()
        for _ in range(directive.count):
            with ctx.descend("again"):
                try:
                    outcome = self.roll_table(frame.table, ctx, frame.collection_id, set(excluded))
                except PoolExhausted:
                    break
            results.append(outcome.text)
            if directive.unique and outcome.selection_key:
                excluded.add(outcome.selection_key)
        return directive.separator.join(results)

    def _eval_variable(self, directive: VariableDirective, ctx, collection_id, state, node) -> str:
        if directive.alias:
            value = self.lookup_imported(directive.alias, directive.name, collection_id)
            node.metadata.update({"name": directive.name, "alias": directive.alias, "source": "import"})
            return value
        node.metadata.update({"name": directive.name,
                              "source": self.variable_source(directive.name, ctx, collection_id)})
        return self.lookup_variable(directive.name, ctx, collection_id)

    def _eval_capture_access(self, directive: CaptureAccessDirective, ctx, collection_id,
                             state, node) -> str:
        variable = self.capture_variable(directive.name, ctx, collection_id)
        node.metadata.update({"name": directive.name, "count": variable.count})

        if directive.attribute == "count":
            return str(variable.count)
        if directive.index is not None:
            item = self._item_at(variable, directive.index, directive.name)
            return item.value if item else ""
        separator = DEFAULT_SEPARATOR if directive.separator is None else directive.separator
        return separator.join(item.value for item in variable.items)

    def _eval_capture_shared(self, directive: CaptureSharedDirective, ctx, collection_id,
                             state, node) -> str:
        variable = self.capture_variable(directive.name, ctx, collection_id)
        if directive.index is not None:
            item = self._item_at(variable, directive.index, directive.name)
            items = [item] if item else []
        else:
            items = variable.items

        values = [self._walk_properties(item, directive.properties) for item in items]
        values = [v for v in values if v]
        node.metadata.update({"name": directive.name, "properties": list(directive.properties)})
        separator = DEFAULT_SEPARATOR if directive.separator is None else directive.separator
        return separator.join(values)

    def _eval_placeholder(self, directive: PlaceholderDirective, ctx, collection_id,
                          state, node) -> str:
        value = self.placeholder_value(directive.name, directive.prop, ctx, collection_id)
        node.metadata.update({"name": directive.name, "property": directive.prop})
        return value

    def _eval_capture(self, directive: CaptureDirective, ctx, collection_id, state, node) -> str:
        count = self.resolve_count(directive.count, ctx, collection_id)
        state.remember_ref(directive.ref)
        outcomes = self.draw_many(directive.ref, count, ctx, collection_id, directive.unique)
        ctx.captures.set(directive.variable,
                         CaptureVariable(items=[o.to_capture_item() for o in outcomes]))
        node.metadata.update({
            "variable": directive.variable,
            "tableId": directive.ref,
            "count": len(outcomes),
            "silent": directive.silent,
        })
        if directive.silent:
            return ""
        return directive.separator.join(o.text for o in outcomes)

    def _eval_collect(self, directive: CollectDirective, ctx, collection_id, state, node) -> str:
        variable = self.capture_variable(directive.variable, ctx, collection_id)
        values: List[str] = []
        for item in variable.items:
            if directive.from_sets:
                value = item.sets.get(directive.prop)
                if isinstance(value, CaptureItem):
                    value = value.value
            elif directive.prop == "description":
                value = item.description
            else:
                value = item.value
            if value:
                values.append(value)

        if directive.unique:
            values = list(dict.fromkeys(values))
        node.metadata.update({"variable": directive.variable, "property": directive.prop,
                              "unique": directive.unique, "count": len(values)})
        return directive.separator.join(values)

    def _eval_switch(self, directive: SwitchDirective, ctx, collection_id, state, node) -> str:
        subject = None
        if directive.subject is not None:
            subject = self.evaluate_directive(directive.subject, ctx, collection_id, state)

        scope = ExprScope(self, ctx, collection_id, subject=subject, strict=False)
        for index, branch in enumerate(directive.branches):
            if is_truthy(branch.condition.evaluate(scope)):
                node.metadata.update({"matched": index, "condition": str(branch.condition)})
                return self._branch_output(branch.result, ctx, collection_id, state)

        if directive.default is not None:
            node.metadata["matched"] = "else"
            return self._branch_output(directive.default, ctx, collection_id, state)
        node.metadata["matched"] = None
        return ""

    def _branch_output(self, result: BranchResult, ctx, collection_id, state) -> str:
        if result.directive is not None:
            return self.evaluate_directive(result.directive, ctx, collection_id, state)
        return result.literal or ""

    # ------------------------------------------------------------------
    # Variables, captures and placeholders
    # ------------------------------------------------------------------

    def lookup_variable(self, name: str, ctx: EvaluationContext, collection_id: str) -> str:
        """Capture, then shared, then static variables"""
        captured = ctx.captures.get(name)
        if captured is not None:
            return DEFAULT_SEPARATOR.join(item.value for item in captured.items)

        shared = ctx.shared.get(name)
        if shared is not None:
            return shared.value if isinstance(shared, CaptureItem) else shared

        static = self._static(name, ctx, collection_id)
        if static is not None:
            return static

        raise ResolutionError(f"Unknown variable '${name}'", name)

    def lookup_imported(self, alias: str, name: str, collection_id: str) -> str:
        value = self.resolver.imported_variable(alias, name, collection_id)
        if value is None:
            raise ResolutionError(f"Unknown variable '${alias}.{name}'", f"{alias}.{name}")
        return value

    def variable_source(self, name: str, ctx: EvaluationContext, collection_id: str) -> str:
        if name in ctx.captures:
            return "capture"
        if ctx.shared.is_declared(name):
            return "shared"
        if self._static(name, ctx, collection_id) is not None:
            return "static"
        return "undefined"

    def _static(self, name: str, ctx: EvaluationContext, collection_id: str) -> Optional[str]:
        collection = self.resolver.registry.get(collection_id)
        if collection is not None and name in collection.document.variables:
            return collection.document.variables[name]
        return ctx.statics.get(name)

    def has_capture_source(self, name: str, ctx: EvaluationContext) -> bool:
        return name in ctx.captures or ctx.shared.is_declared(name)

    def capture_variable(self, name: str, ctx: EvaluationContext,
                         collection_id: str) -> CaptureVariable:
        """A capture variable, or a single-item view of a shared/static value"""
        captured = ctx.captures.get(name)
        if captured is not None:
            return captured
        shared = ctx.shared.get(name)
        if isinstance(shared, CaptureItem):
            return CaptureVariable(items=[shared])
        if shared is not None:
            return CaptureVariable(items=[CaptureItem(value=shared)])
        static = self._static(name, ctx, collection_id)
        if static is not None:
            return CaptureVariable(items=[CaptureItem(value=static)])
        raise ResolutionError(f"Unknown capture variable '${name}'", name)

    def _item_at(self, variable: CaptureVariable, index: int, name: str) -> Optional[CaptureItem]:
        try:
            return variable.items[index]
        except IndexError:
            logger.warning(f"Capture index {index} out of range for '${name}' ({variable.count} items)")
            return None

    def _walk_properties(self, item: CaptureItem, properties) -> str:
        current: Union[CaptureItem, str, None] = item
        for prop in properties:
            if not isinstance(current, CaptureItem):
                return ""
            if prop == "description" and prop not in current.sets:
                current = current.description or ""
            else:
                current = current.sets.get(prop)
        if isinstance(current, CaptureItem):
            return current.value
        return current or ""

    def _resolve_property_item(self, item: CaptureItem, properties) -> Optional[CaptureItem]:
        current: Union[CaptureItem, str, None] = item
        for prop in properties:
            if not isinstance(current, CaptureItem):
                return None
            current = current.sets.get(prop)
        if isinstance(current, CaptureItem):
            return current
        if isinstance(current, str):
            return CaptureItem(value=current)
        return None

    def placeholder_value(self, name: str, prop: Optional[str], ctx: EvaluationContext,
                          collection_id: str) -> str:
        if name == "self":
            frame = ctx.current_frame
            if prop == "description" and frame is not None and frame.description:
                with ctx.descend("@self.description"):
                    return self.evaluate_pattern(frame.description, ctx, frame.collection_id)
            return ""

        value = ctx.get_placeholder(name, prop)
        if value is None:
            logger.warning(f"Placeholder '@{name}{'.' + prop if prop else ''}' is not set")
            return ""
        return value

    # ------------------------------------------------------------------
    # Shared variables
    # ------------------------------------------------------------------

    def _evaluate_shared(self, scope: SharedScope, declaration: SharedDeclaration,
                         ctx: EvaluationContext) -> Union[str, CaptureItem]:
        collection_id = scope.collection_id or ctx.collection_id
        with ctx.trace.node("shared_variable", f"Shared: ${declaration.name}",
                            declaration.pattern, {"scope": scope.owner}) as node:
            if declaration.capture_aware:
                value = self._evaluate_capture_aware(declaration.pattern, ctx, collection_id)
                node.value = value.value
            else:
                value = self.evaluate_pattern(declaration.pattern, ctx, collection_id)
                node.value = value
        return value

    def _evaluate_capture_aware(self, pattern: str, ctx: EvaluationContext,
                                collection_id: str) -> CaptureItem:
        """Keep the structured roll when the pattern is a single reference"""
        table_ref = self._single_table_ref(pattern, collection_id)
        if table_ref is not None:
            return self.roll_resolved(table_ref, ctx).to_capture_item()

        matches = extract_expressions(pattern)
        if len(matches) == 1 and pattern.strip() == matches[0].raw:
            directive = self.parser.parse(matches[0].expression)
            if isinstance(directive, CaptureSharedDirective):
                variable = self.capture_variable(directive.name, ctx, collection_id)
                item = self._item_at(variable, directive.index or 0, directive.name)
                nested = self._resolve_property_item(item, directive.properties) if item else None
                if nested is not None:
                    return nested
            elif isinstance(directive, CaptureAccessDirective) and directive.index is not None:
                variable = self.capture_variable(directive.name, ctx, collection_id)
                item = self._item_at(variable, directive.index, directive.name)
                if item is not None:
                    return item

        return CaptureItem(value=self.evaluate_pattern(pattern, ctx, collection_id))

