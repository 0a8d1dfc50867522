"""Directive Parser - turns the inner text of {{...}} spans into directives

classify_expression() is a pure function of the text: it never looks at a
document, so a reference to a table that does not exist still classifies
(and parses) as a table directive. Existence is checked at evaluation time.

ExpressionParser is a recursive descent parser for the expression language
shared by math directives, switch conditions and document conditionals:

  expression     := logical_or
  logical_or     := logical_and ('||' logical_and)*
  logical_and    := equality ('&&' equality)*
  equality       := comparison (('==' | '!=' | 'contains' | 'matches') comparison)*
  comparison     := addition (('<' | '<=' | '>' | '>=') addition)*
  addition       := multiplication (('+' | '-') multiplication)*
  multiplication := unary (('*' | '/' | '%') unary)*
  unary          := ('!' | '-' | '+') unary | primary
  primary        := NUMBER | STRING | VARIABLE | PLACEHOLDER
                  | IDENTIFIER | function_call | '(' expression ')'
  function_call  := IDENTIFIER '(' (expression (',' expression)*)? ')'
"""

import re
from typing import Callable, Dict, List, Optional, Tuple

from .ast_nodes import (
    AgainDirective, BinaryNode, BranchResult, CaptureAccessDirective,
    CaptureDirective, CaptureSharedDirective, CollectDirective,
    DEFAULT_SEPARATOR, DiceDirective, Directive, DirectiveKind, ExprNode,
    FunctionCallNode, LiteralNode, MathDirective, MultiRollDirective,
    PlaceholderDirective, PlaceholderNode, RollCount, SwitchBranch,
    SwitchDirective, TableDirective, UnaryNode, UniqueDirective,
    VariableDirective, VariableNode,
)
from .dice import DICE_PATTERN, parse_notation
from .errors import ParseError
from .lexer import ExprLexer, LexerError, Token, TokenType


__all__ = [
    "ParseError", "classify_expression", "DirectiveParser", "ExpressionParser",
    "parse_directive", "parse_expression",
]


REF = r"[A-Za-z0-9_][\w\-]*(?:\.[A-Za-z0-9_][\w\-]*)*"
COUNT = r"\d+|\$\w+|\d*[dD]\d+"

REF_RE = re.compile(rf"^{REF}$")
INSTANCE_RE = re.compile(rf"^(?P<ref>{REF})#(?P<instance>[\w\-]+)$")
CAPTURE_RE = re.compile(r">>\s*\$")
MULTI_ROLL_PREFIX_RE = re.compile(r"^(?:\d+|\d*[dD]\d+)\*")
VARIABLE_COUNT_PREFIX_RE = re.compile(rf"^\$\w+\*(?:unique\*)?{REF}")
MULTI_ROLL_RE = re.compile(rf"^(?P<count>{COUNT})\*(?P<unique>unique\*)?(?P<ref>{REF})$")
AGAIN_RE = re.compile(r"^(?:(?P<count>\d+)\*(?P<unique>unique\*)?)?again$")
UNIQUE_RE = re.compile(rf"^unique:(?P<count>\d+):(?P<ref>{REF})$")
VARIABLE_RE = re.compile(r"^\$(?P<name>\w+)(?:\.(?P<sub>\w+))?$")
CAPTURE_HEAD_RE = re.compile(r"^\$(?P<name>\w+)(?:\[(?P<index>-?\d+)\])?")
CAPTURE_ACCESS_HINT_RE = re.compile(r"^\$\w+(?:\[|\||\.count$|\.value$)")
PLACEHOLDER_RE = re.compile(r"^@(?P<name>\w+)(?:\.(?P<prop>\w+))?$")
COLLECT_RE = re.compile(r"^\$(?P<name>\w+)\.(?P<at>@)?(?P<prop>\w+)$")


def classify_expression(expression: str) -> DirectiveKind:
    """Map directive text to its kind without consulting any document"""
    text = expression.strip()

    if "switch[" in text:
        return DirectiveKind.SWITCH
    if text.startswith("dice:"):
        return DirectiveKind.DICE
    if text.startswith("math:"):
        return DirectiveKind.MATH
    if text.startswith("collect:"):
        return DirectiveKind.COLLECT
    if CAPTURE_RE.search(text):
        return DirectiveKind.CAPTURE
    if text.startswith("$"):
        if VARIABLE_COUNT_PREFIX_RE.match(text):
            return DirectiveKind.MULTI_ROLL
        if "@" in text:
            return DirectiveKind.CAPTURE_SHARED
        if CAPTURE_ACCESS_HINT_RE.match(text):
            return DirectiveKind.CAPTURE_ACCESS
        return DirectiveKind.VARIABLE
    if text.startswith("@"):
        return DirectiveKind.PLACEHOLDER
    base = text.split("|", 1)[0].strip()
    if base == "again" or base.endswith("*again"):
        return DirectiveKind.AGAIN
    if text.startswith("unique:"):
        return DirectiveKind.UNIQUE
    if MULTI_ROLL_PREFIX_RE.match(text):
        return DirectiveKind.MULTI_ROLL
    return DirectiveKind.TABLE


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def split_top_level(text: str, separator: str, maxsplit: int = -1) -> List[str]:
    """Split on a single-character separator outside quotes, brackets and parens"""
    parts: List[str] = []
    depth = 0
    quote = ""
    current = ""
    i = 0
    while i < len(text):
        char = text[i]
        if quote:
            current += char
            if char == "\\" and i + 1 < len(text):
                current += text[i + 1]
                i += 2
                continue
            if char == quote:
                quote = ""
        elif char in ('"', "'"):
            quote = char
            current += char
        elif char in "[(":
            depth += 1
            current += char
        elif char in "])":
            depth -= 1
            current += char
        elif char == separator and depth == 0 and (maxsplit < 0 or len(parts) < maxsplit):
            # "||" is an operator, never a modifier separator
            if separator == "|" and (text[i + 1:i + 2] == "|" or text[i - 1:i] == "|"):
                current += char
            else:
                parts.append(current)
                current = ""
        else:
            current += char
        i += 1
    parts.append(current)
    return parts


def is_quoted(text: str) -> bool:
    text = text.strip()
    return len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'")


def unquote(text: str) -> str:
    text = text.strip()
    body = text[1:-1]
    return body.replace("\\n", "\n").replace("\\t", "\t").replace('\\"', '"').replace("\\'", "'")


def find_closing_bracket(text: str, open_index: int) -> int:
    """Index of the ']' matching text[open_index] == '[', or -1"""
    depth = 0
    quote = ""
    i = open_index
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = ""
        elif char in ('"', "'"):
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


# ---------------------------------------------------------------------------
# Expression parser
# ---------------------------------------------------------------------------

class ExpressionParser:
    """Recursive descent parser for math and condition expressions"""

    def __init__(self):
        self.tokens: List[Token] = []
        self.current = 0
        self.lexer = ExprLexer()
        self.text = ""

    def parse(self, text: str) -> ExprNode:
        """Parse a complete expression; trailing tokens are an error"""
        self.text = text
        try:
            self.tokens = self.lexer.tokenize(text)
        except LexerError as e:
            raise ParseError(e.message, text, e.position) from e
        self.current = 0

        if self._is_at_end():
            raise ParseError("Empty expression", text)

        expr = self._parse_expression()
        if not self._is_at_end():
            raise self._error(f"Unexpected token '{self._peek().value}'")
        return expr

    def _error(self, message: str) -> ParseError:
        return ParseError(message, self.text, self._peek().position)

    def _parse_expression(self) -> ExprNode:
        return self._parse_logical_or()

    def _parse_logical_or(self) -> ExprNode:
        expr = self._parse_logical_and()
        while self._match(TokenType.OR):
            right = self._parse_logical_and()
            expr = BinaryNode("||", expr, right, expr.position)
        return expr

    def _parse_logical_and(self) -> ExprNode:
        expr = self._parse_equality()
        while self._match(TokenType.AND):
            right = self._parse_equality()
            expr = BinaryNode("&&", expr, right, expr.position)
        return expr

    def _parse_equality(self) -> ExprNode:
        expr = self._parse_comparison()
        while self._match(TokenType.EQUAL, TokenType.NOT_EQUAL,
                          TokenType.CONTAINS, TokenType.MATCHES):
            token = self._previous()
            operator = {
                TokenType.EQUAL: "==",
                TokenType.NOT_EQUAL: "!=",
                TokenType.CONTAINS: "contains",
                TokenType.MATCHES: "matches",
            }[token.type]
            right = self._parse_comparison()
            expr = BinaryNode(operator, expr, right, expr.position)
        return expr

    def _parse_comparison(self) -> ExprNode:
        expr = self._parse_addition()
        while self._match(TokenType.LESS, TokenType.LESS_EQUAL,
                          TokenType.GREATER, TokenType.GREATER_EQUAL):
            operator = self._previous().value
            right = self._parse_addition()
            expr = BinaryNode(operator, expr, right, expr.position)
        return expr

    def _parse_addition(self) -> ExprNode:
        expr = self._parse_multiplication()
        while self._match(TokenType.PLUS, TokenType.MINUS):
            operator = self._previous().value
            right = self._parse_multiplication()
            expr = BinaryNode(operator, expr, right, expr.position)
        return expr

    def _parse_multiplication(self) -> ExprNode:
        expr = self._parse_unary()
        while self._match(TokenType.MULTIPLY, TokenType.DIVIDE, TokenType.MODULO):
            operator = self._previous().value
            right = self._parse_unary()
            expr = BinaryNode(operator, expr, right, expr.position)
        return expr

    def _parse_unary(self) -> ExprNode:
        if self._match(TokenType.NOT, TokenType.PLUS, TokenType.MINUS):
            token = self._previous()
            operand = self._parse_unary()
            return UnaryNode(token.value, operand, token.position)
        return self._parse_primary()

    def _parse_primary(self) -> ExprNode:
        if self._match(TokenType.NUMBER):
            token = self._previous()
            return LiteralNode(float(token.value), token.position)

        if self._match(TokenType.STRING):
            token = self._previous()
            return LiteralNode(token.value, token.position)

        if self._match(TokenType.VARIABLE):
            token = self._previous()
            return VariableNode(token.value, token.position)

        if self._match(TokenType.PLACEHOLDER):
            token = self._previous()
            return PlaceholderNode(token.value, token.position)

        if self._match(TokenType.IDENTIFIER):
            token = self._previous()
            if self._check(TokenType.LPAREN):
                return self._parse_function_call(token)
            # bare words are literal text
            return LiteralNode(token.value, token.position)

        if self._match(TokenType.LPAREN):
            expr = self._parse_expression()
            if not self._match(TokenType.RPAREN):
                raise self._error("Expected ')' after expression")
            return expr

        raise self._error("Expected expression")

    def _parse_function_call(self, name_token: Token) -> FunctionCallNode:
        self._advance()  # consume '('
        args: List[ExprNode] = []
        if not self._check(TokenType.RPAREN):
            args.append(self._parse_expression())
            while self._match(TokenType.COMMA):
                args.append(self._parse_expression())
        if not self._match(TokenType.RPAREN):
            raise self._error("Expected ')' after function arguments")
        try:
            return FunctionCallNode(name_token.value, args, name_token.position)
        except ParseError as e:
            raise ParseError(e.message, self.text, name_token.position) from e

    # Utility methods
    def _match(self, *types: TokenType) -> bool:
        for token_type in types:
            if self._check(token_type):
                self._advance()
                return True
        return False

    def _check(self, token_type: TokenType) -> bool:
        if self._is_at_end():
            return False
        return self._peek().type == token_type

    def _advance(self) -> Token:
        if not self._is_at_end():
            self.current += 1
        return self._previous()

    def _is_at_end(self) -> bool:
        return self.current >= len(self.tokens) or self._peek().type == TokenType.EOF

    def _peek(self) -> Token:
        if self.current >= len(self.tokens):
            return Token(TokenType.EOF, "", len(self.text))
        return self.tokens[self.current]

    def _previous(self) -> Token:
        if self.current > 0:
            return self.tokens[self.current - 1]
        return Token(TokenType.EOF, "", 0)


# ---------------------------------------------------------------------------
# Directive parser
# ---------------------------------------------------------------------------

class DirectiveParser:
    """Parses directive text into typed Directive dataclasses"""

    def __init__(self):
        self.expression_parser = ExpressionParser()
        self._handlers: Dict[DirectiveKind, Callable[[str], Directive]] = {
            DirectiveKind.DICE: self._parse_dice,
            DirectiveKind.MATH: self._parse_math,
            DirectiveKind.TABLE: self._parse_table,
            DirectiveKind.MULTI_ROLL: self._parse_multi_roll,
            DirectiveKind.UNIQUE: self._parse_unique,
            DirectiveKind.AGAIN: self._parse_again,
            DirectiveKind.VARIABLE: self._parse_variable,
            DirectiveKind.CAPTURE_ACCESS: self._parse_capture_access,
            DirectiveKind.CAPTURE_SHARED: self._parse_capture_shared,
            DirectiveKind.PLACEHOLDER: self._parse_placeholder,
            DirectiveKind.CAPTURE: self._parse_capture,
            DirectiveKind.COLLECT: self._parse_collect,
            DirectiveKind.SWITCH: self._parse_switch,
        }
        missing = set(DirectiveKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No parser for directive kinds: {sorted(k.value for k in missing)}")

    def parse(self, expression: str) -> Directive:
        text = expression.strip()
        if not text:
            raise ParseError("Empty directive")
        return self._handlers[classify_expression(text)](text)

    # -- modifiers -----------------------------------------------------------

    def _split_modifiers(self, text: str) -> Tuple[str, List[str]]:
        parts = [p.strip() for p in split_top_level(text, "|")]
        return parts[0], parts[1:]

    def _separator_from(self, modifiers: List[str], raw: str,
                        allowed: Tuple[str, ...] = ()) -> Tuple[Optional[str], List[str]]:
        """Pull the quoted separator out of a modifier list"""
        separator = None
        flags: List[str] = []
        for modifier in modifiers:
            if is_quoted(modifier):
                separator = unquote(modifier)
            elif modifier in allowed:
                flags.append(modifier)
            else:
                raise ParseError(f"Unknown modifier '{modifier}'", raw)
        return separator, flags

    def _parse_count(self, text: str, raw: str) -> RollCount:
        if text.isdigit():
            return RollCount(literal=int(text))
        if text.startswith("$"):
            return RollCount(variable=text[1:])
        if DICE_PATTERN.match(text):
            return RollCount(dice=parse_notation(text))
        raise ParseError(f"Invalid roll count '{text}'", raw)

    # -- handlers ------------------------------------------------------------

    def _parse_dice(self, text: str) -> Directive:
        body = text[len("dice:"):].strip()
        if not body:
            raise ParseError("Missing dice notation", text)
        return DiceDirective(raw=text, spec=parse_notation(body))

    def _parse_math(self, text: str) -> Directive:
        body = text[len("math:"):].strip()
        return MathDirective(raw=text, expression=self.expression_parser.parse(body))

    def _parse_table(self, text: str) -> Directive:
        match = INSTANCE_RE.match(text)
        if match:
            return TableDirective(raw=text, ref=match.group("ref"), instance=match.group("instance"))
        if not REF_RE.match(text):
            raise ParseError("Invalid table reference", text)
        return TableDirective(raw=text, ref=text)

    def _parse_multi_roll(self, text: str) -> Directive:
        base, modifiers = self._split_modifiers(text)
        match = MULTI_ROLL_RE.match(base)
        if not match:
            raise ParseError("Invalid multi-roll", text)
        separator, _ = self._separator_from(modifiers, text)
        return MultiRollDirective(
            raw=text,
            count=self._parse_count(match.group("count"), text),
            ref=match.group("ref"),
            unique=bool(match.group("unique")),
            separator=DEFAULT_SEPARATOR if separator is None else separator,
        )

    def _parse_unique(self, text: str) -> Directive:
        base, modifiers = self._split_modifiers(text)
        match = UNIQUE_RE.match(base)
        if not match:
            raise ParseError("Invalid unique directive, expected unique:N:tableId", text)
        separator, _ = self._separator_from(modifiers, text)
        return UniqueDirective(
            raw=text,
            count=int(match.group("count")),
            ref=match.group("ref"),
            separator=DEFAULT_SEPARATOR if separator is None else separator,
        )

    def _parse_again(self, text: str) -> Directive:
        base, modifiers = self._split_modifiers(text)
        match = AGAIN_RE.match(base)
        if not match:
            raise ParseError("Invalid again directive", text)
        separator, _ = self._separator_from(modifiers, text)
        return AgainDirective(
            raw=text,
            count=int(match.group("count") or 1),
            unique=bool(match.group("unique")),
            separator=DEFAULT_SEPARATOR if separator is None else separator,
        )

    def _parse_variable(self, text: str) -> Directive:
        match = VARIABLE_RE.match(text)
        if not match:
            raise ParseError("Invalid variable reference", text)
        if match.group("sub"):
            return VariableDirective(raw=text, name=match.group("sub"), alias=match.group("name"))
        return VariableDirective(raw=text, name=match.group("name"))

    def _parse_capture_access(self, text: str) -> Directive:
        base, modifiers = self._split_modifiers(text)
        head = CAPTURE_HEAD_RE.match(base)
        if not head:
            raise ParseError("Invalid capture access", text)
        rest = base[head.end():]
        attribute = None
        if rest in (".count", ".value"):
            attribute = rest[1:]
        elif rest:
            raise ParseError(f"Unknown capture property '{rest}'", text)
        separator, _ = self._separator_from(modifiers, text)
        index = head.group("index")
        return CaptureAccessDirective(
            raw=text,
            name=head.group("name"),
            index=int(index) if index is not None else None,
            attribute=attribute,
            separator=separator,
        )

    def _parse_capture_shared(self, text: str) -> Directive:
        base, modifiers = self._split_modifiers(text)
        head = CAPTURE_HEAD_RE.match(base)
        if not head:
            raise ParseError("Invalid capture property access", text)
        rest = base[head.end():]
        properties = re.findall(r"\.@(\w+)", rest)
        if not properties or "".join(f".@{p}" for p in properties) != rest:
            raise ParseError("Expected .@property chain", text)
        separator, _ = self._separator_from(modifiers, text)
        index = head.group("index")
        return CaptureSharedDirective(
            raw=text,
            name=head.group("name"),
            index=int(index) if index is not None else None,
            properties=tuple(properties),
            separator=separator,
        )

    def _parse_placeholder(self, text: str) -> Directive:
        match = PLACEHOLDER_RE.match(text)
        if not match:
            raise ParseError("Invalid placeholder", text)
        return PlaceholderDirective(raw=text, name=match.group("name"), prop=match.group("prop"))

    def _parse_capture(self, text: str) -> Directive:
        left, _, right = text.partition(">>")
        left = left.strip()
        variable_text, modifiers = self._split_modifiers(right.strip())
        if not re.match(r"^\$\w+$", variable_text):
            raise ParseError("Capture target must be a $variable", text)
        separator, flags = self._separator_from(modifiers, text, allowed=("silent",))

        match = MULTI_ROLL_RE.match(left)
        if match:
            count = self._parse_count(match.group("count"), text)
            ref = match.group("ref")
            unique = bool(match.group("unique"))
        elif REF_RE.match(left):
            count, ref, unique = RollCount(literal=1), left, False
        else:
            raise ParseError("Invalid capture source", text)

        return CaptureDirective(
            raw=text,
            count=count,
            ref=ref,
            variable=variable_text[1:],
            unique=unique,
            silent="silent" in flags,
            separator=DEFAULT_SEPARATOR if separator is None else separator,
        )

    def _parse_collect(self, text: str) -> Directive:
        body = text[len("collect:"):].strip()
        base, modifiers = self._split_modifiers(body)
        match = COLLECT_RE.match(base)
        if not match:
            raise ParseError("Invalid collect, expected collect:$var.@property", text)
        separator, flags = self._separator_from(modifiers, text, allowed=("unique",))

        prop = match.group("prop")
        from_sets = bool(match.group("at")) and prop != "description"
        if not match.group("at") and prop not in ("value", "description"):
            raise ParseError(f"Unknown collect property '{prop}'", text)

        return CollectDirective(
            raw=text,
            variable=match.group("name"),
            prop=prop,
            from_sets=from_sets,
            unique="unique" in flags,
            separator=DEFAULT_SEPARATOR if separator is None else separator,
        )

    def _parse_switch(self, text: str) -> Directive:
        start = text.find("switch[")
        subject = None
        if start > 0:
            subject_text = text[:start]
            if not subject_text.endswith("."):
                raise ParseError("Expected '.' before switch", text)
            subject_text = subject_text[:-1].strip()
            if not subject_text:
                raise ParseError("Empty switch subject", text)
            subject = self.parse(subject_text)

        branches: List[SwitchBranch] = []
        default = None
        pos = start + len("switch")
        while pos < len(text):
            if text.startswith(".else[", pos):
                open_index = pos + len(".else")
                close = find_closing_bracket(text, open_index)
                if close < 0:
                    raise ParseError("Unbalanced '[' in else", text)
                default = self._parse_branch_result(text[open_index + 1:close], text)
                pos = close + 1
                if pos != len(text):
                    raise ParseError("Unexpected text after else", text)
                break

            if text.startswith(".switch[", pos):
                pos += len(".switch")
            if not text.startswith("[", pos):
                raise ParseError("Expected '[' in switch", text)

            close = find_closing_bracket(text, pos)
            if close < 0:
                raise ParseError("Unbalanced '[' in switch", text)
            branches.append(self._parse_branch(text[pos + 1:close], text))
            pos = close + 1

        if not branches:
            raise ParseError("Switch needs at least one branch", text)
        return SwitchDirective(raw=text, subject=subject, branches=tuple(branches), default=default)

    def _parse_branch(self, body: str, raw: str) -> SwitchBranch:
        parts = split_top_level(body, ":", maxsplit=1)
        if len(parts) != 2:
            raise ParseError("Switch branch needs 'condition:result'", raw)
        condition = self.expression_parser.parse(parts[0].strip())
        return SwitchBranch(condition=condition, result=self._parse_branch_result(parts[1], raw))

    def _parse_branch_result(self, body: str, raw: str) -> BranchResult:
        body = body.strip()
        if not body:
            return BranchResult(literal="")
        if is_quoted(body):
            return BranchResult(literal=unquote(body))
        return BranchResult(directive=self.parse(body))


_default_parser: Optional[DirectiveParser] = None


def parse_directive(expression: str) -> Directive:
    """Convenience function using a module-level parser"""
    global _default_parser
    if _default_parser is None:
        _default_parser = DirectiveParser()
    return _default_parser.parse(expression)


def parse_expression(text: str) -> ExprNode:
    """Convenience function to parse an expression"""
    return ExpressionParser().parse(text)
