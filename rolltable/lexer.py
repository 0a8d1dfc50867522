"""Lexers for rolltable patterns

Two scanners live here:
- PatternScanner finds the top-level {{...}} directive spans inside a
  pattern string, with their source offsets
- ExprLexer tokenizes the small expression language used by math
  directives, switch conditions and document conditionals
  (numbers, strings, $variables, @placeholders, operators)
"""

from enum import Enum
from typing import Iterator, List, NamedTuple
from dataclasses import dataclass


OPEN = "{{"
CLOSE = "}}"


class ExpressionMatch(NamedTuple):
    """One {{...}} span found in a pattern"""
    raw: str          # including the braces
    expression: str   # inner text, stripped
    start: int        # offset of the opening braces
    end: int          # offset just past the closing braces


class PatternScanner:
    """Restartable, lazy view over the directive spans of a pattern

    Iterating twice scans twice; nothing is cached. An opening '{{' with no
    closing '}}' after it ends the scan and the remainder is literal text.
    Empty spans such as '{{}}' or '{{  }}' are literal text as well.
    """

    def __init__(self, pattern: str):
        self.pattern = pattern or ""

    def __iter__(self) -> Iterator[ExpressionMatch]:
        text = self.pattern
        pos = 0
        while True:
            start = text.find(OPEN, pos)
            if start < 0:
                return
            close = text.find(CLOSE, start + len(OPEN))
            if close < 0:
                return
            end = close + len(CLOSE)
            inner = text[start + len(OPEN):close]
            if inner.strip():
                yield ExpressionMatch(text[start:end], inner.strip(), start, end)
            pos = end

    def __bool__(self) -> bool:
        return any(True for _ in self)


def extract_expressions(pattern: str) -> List[ExpressionMatch]:
    """Convenience function returning all directive spans of a pattern"""
    return list(PatternScanner(pattern))


def has_expressions(pattern: str) -> bool:
    return bool(PatternScanner(pattern))


class TokenType(Enum):
    """Token types for the expression language"""
    # Literals
    NUMBER = "NUMBER"
    STRING = "STRING"
    IDENTIFIER = "IDENTIFIER"
    VARIABLE = "VARIABLE"        # $name, $alias.name, bare $
    PLACEHOLDER = "PLACEHOLDER"  # @name, @name.prop

    # Arithmetic
    PLUS = "PLUS"
    MINUS = "MINUS"
    MULTIPLY = "MULTIPLY"
    DIVIDE = "DIVIDE"
    MODULO = "MODULO"

    # Comparison
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"
    LESS = "LESS"
    LESS_EQUAL = "LESS_EQUAL"
    GREATER = "GREATER"
    GREATER_EQUAL = "GREATER_EQUAL"
    CONTAINS = "CONTAINS"
    MATCHES = "MATCHES"

    # Logical
    AND = "AND"
    OR = "OR"
    NOT = "NOT"

    # Punctuation
    COMMA = "COMMA"
    LPAREN = "LPAREN"
    RPAREN = "RPAREN"

    EOF = "EOF"


@dataclass
class Token:
    """A single token with its offset in the source text"""
    type: TokenType
    value: str
    position: int

    def __str__(self):
        return f"Token({self.type.value}, '{self.value}', @{self.position})"

    def __repr__(self):
        return self.__str__()


class LexerError(Exception):
    """Lexer error with position information"""
    def __init__(self, message: str, position: int):
        self.message = message
        self.position = position
        super().__init__(f"{message} at offset {position}")


class ExprLexer:
    """Tokenizer for math and condition expressions"""

    KEYWORDS = {
        'contains': TokenType.CONTAINS,
        'matches': TokenType.MATCHES,
    }

    # Multi-character operators (order matters - longer first)
    MULTI_CHAR_OPS = [
        ('==', TokenType.EQUAL),
        ('!=', TokenType.NOT_EQUAL),
        ('<=', TokenType.LESS_EQUAL),
        ('>=', TokenType.GREATER_EQUAL),
        ('&&', TokenType.AND),
        ('||', TokenType.OR),
    ]

    SINGLE_CHAR_OPS = {
        '+': TokenType.PLUS,
        '-': TokenType.MINUS,
        '*': TokenType.MULTIPLY,
        '/': TokenType.DIVIDE,
        '%': TokenType.MODULO,
        '=': TokenType.EQUAL,
        '<': TokenType.LESS,
        '>': TokenType.GREATER,
        '!': TokenType.NOT,
        ',': TokenType.COMMA,
        '(': TokenType.LPAREN,
        ')': TokenType.RPAREN,
    }

    def __init__(self):
        self.text = ""
        self.pos = 0
        self.tokens: List[Token] = []

    def tokenize(self, text: str) -> List[Token]:
        """Tokenize expression text and return list of tokens"""
        self.text = text
        self.pos = 0
        self.tokens = []

        while self.pos < len(self.text):
            char = self._current_char()

            if char.isspace():
                self.pos += 1
                continue

            if char.isdigit() or (char == '.' and self._peek().isdigit()):
                self._read_number()
                continue

            if char == '$':
                self._read_reference(TokenType.VARIABLE, allow_empty=True)
                continue

            if char == '@':
                self._read_reference(TokenType.PLACEHOLDER, allow_empty=False)
                continue

            if char.isalpha() or char == '_':
                self._read_identifier()
                continue

            if char in ('"', "'"):
                self._read_string()
                continue

            matched = False
            for op_str, token_type in self.MULTI_CHAR_OPS:
                if self.text.startswith(op_str, self.pos):
                    self._add_token(token_type, op_str, self.pos)
                    self.pos += len(op_str)
                    matched = True
                    break
            if matched:
                continue

            if char in self.SINGLE_CHAR_OPS:
                self._add_token(self.SINGLE_CHAR_OPS[char], char, self.pos)
                self.pos += 1
                continue

            raise LexerError(f"Unexpected character: '{char}'", self.pos)

        self._add_token(TokenType.EOF, "", self.pos)
        return self.tokens

    def _current_char(self) -> str:
        if self.pos >= len(self.text):
            return '\0'
        return self.text[self.pos]

    def _peek(self, offset: int = 1) -> str:
        peek_pos = self.pos + offset
        if peek_pos >= len(self.text):
            return '\0'
        return self.text[peek_pos]

    def _add_token(self, token_type: TokenType, value: str, position: int):
        self.tokens.append(Token(token_type, value, position))

    def _read_number(self):
        start = self.pos
        while self._current_char().isdigit():
            self.pos += 1
        if self._current_char() == '.' and self._peek().isdigit():
            self.pos += 1
            while self._current_char().isdigit():
                self.pos += 1
        self._add_token(TokenType.NUMBER, self.text[start:self.pos], start)

    def _read_name(self) -> str:
        start = self.pos
        while self._current_char().isalnum() or self._current_char() == '_':
            self.pos += 1
        return self.text[start:self.pos]

    def _read_reference(self, token_type: TokenType, allow_empty: bool):
        """Read $name / @name with optional dotted parts"""
        start = self.pos
        self.pos += 1  # consume sigil
        parts = [self._read_name()]
        while self._current_char() == '.' and (self._peek().isalnum() or self._peek() == '_'):
            self.pos += 1
            parts.append(self._read_name())

        name = ".".join(parts)
        if not name and not allow_empty:
            raise LexerError(f"Expected a name after '{self.text[start]}'", start)
        self._add_token(token_type, name, start)

    def _read_identifier(self):
        start = self.pos
        value = self._read_name()
        token_type = self.KEYWORDS.get(value.lower(), TokenType.IDENTIFIER)
        self._add_token(token_type, value, start)

    def _read_string(self):
        start = self.pos
        quote_char = self._current_char()
        self.pos += 1

        value = ""
        while self.pos < len(self.text) and self._current_char() != quote_char:
            if self._current_char() == '\\' and self.pos + 1 < len(self.text):
                self.pos += 1
            value += self._current_char()
            self.pos += 1

        if self.pos >= len(self.text):
            raise LexerError("Unterminated string", start)

        self.pos += 1  # consume closing quote
        self._add_token(TokenType.STRING, value, start)


def tokenize_expression(text: str) -> List[Token]:
    """Convenience function to tokenize expression text"""
    return ExprLexer().tokenize(text)
