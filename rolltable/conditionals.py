"""Document conditionals

After a roll, each of the document's conditionals is checked in order. A
matching conditional transforms the generated text or sets a shared
variable:
- append / prepend: add the evaluated value around the text
- replace: regex-replace 'target' in the text, or replace the whole text
  when no target is given
- setVariable: store the evaluated value under the shared name 'target'
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .ast_nodes import is_truthy
from .evaluator import EvaluatedSegment, ExprScope
from .logging_config import get_logger
from .models import Conditional
from .parser import parse_expression


logger = get_logger(__name__)


@dataclass
class ConditionalResult:
    matched: bool
    action: Optional[str] = None
    text: Optional[str] = None
    variable: Optional[str] = None


def evaluate_when_clause(when: str, scope) -> bool:
    """True when the 'when' expression holds in the given scope"""
    return is_truthy(parse_expression(when).evaluate(scope))


def evaluate_conditional(conditional: Conditional, text: str, scope, evaluator, ctx,
                         collection_id: str) -> ConditionalResult:
    if not evaluate_when_clause(conditional.when, scope):
        return ConditionalResult(matched=False)

    value = evaluator.evaluate_pattern(conditional.value, ctx, collection_id)

    if conditional.action == "append":
        return ConditionalResult(True, "append", text + value)
    if conditional.action == "prepend":
        return ConditionalResult(True, "prepend", value + text)
    if conditional.action == "replace":
        if not conditional.target:
            return ConditionalResult(True, "replace", value)
        try:
            replaced = re.sub(conditional.target, lambda _: value, text)
        except re.error as e:
            logger.warning(f"Invalid replace target '{conditional.target}': {e}")
            return ConditionalResult(True, "replace", text)
        return ConditionalResult(True, "replace", replaced)

    # setVariable
    if conditional.target:
        ctx.shared.assign(conditional.target, value)
    return ConditionalResult(True, "setVariable", variable=conditional.target)


def apply_conditionals(conditionals: Sequence[Conditional], text: str, evaluator, ctx,
                       collection_id: str,
                       segments: Optional[List[EvaluatedSegment]] = None) -> str:
    """Apply all conditionals in order and return the transformed text

    When segments are given they are extended so that they still join to
    the returned text.
    """
    results: List[ConditionalResult] = []
    for conditional in conditionals:
        scope = ExprScope(evaluator, ctx, collection_id, subject=text, strict=False)
        with ctx.trace.detached_node("conditional", f"When: {conditional.when}",
                                     conditional.when, {"action": conditional.action}) as node:
            result = evaluate_conditional(conditional, text, scope, evaluator, ctx, collection_id)
            node.value = result.matched
        if result.text is not None:
            if segments is not None and result.text != text:
                _record_segment(segments, conditional, text, result.text)
            text = result.text
        results.append(result)

    logger.debug(f"Applied {sum(r.matched for r in results)} of {len(results)} conditionals")
    return text


def _record_segment(segments: List[EvaluatedSegment], conditional: Conditional,
                    before: str, after: str):
    end = segments[-1].end if segments else 0

    def segment(text: str, start: int, stop: int) -> EvaluatedSegment:
        return EvaluatedSegment("conditional", text, start, stop, raw=conditional.when,
                                expression=conditional.when, kind=conditional.action)

    if conditional.action == "append":
        segments.append(segment(after[len(before):], end, end))
    elif conditional.action == "prepend":
        segments.insert(0, segment(after[:len(after) - len(before)], 0, 0))
    else:
        # a replace rewrites text across segment boundaries; collapse to one span
        segments[:] = [segment(after, 0, end)]
