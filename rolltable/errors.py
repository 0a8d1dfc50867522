"""Error types raised while loading documents and evaluating patterns

Every fatal condition raised inside the engine derives from RollTableError
and carries an ErrorKind, so the public entry points can turn any of them
into a typed result without inspecting exception classes one by one.
"""

from enum import Enum
from typing import List, Optional, Sequence


class ErrorKind(Enum):
    """Categories of engine errors"""
    PARSE = "parse"
    RESOLUTION = "resolution"
    DEPTH_EXCEEDED = "depth_exceeded"
    SELECTION = "selection"
    DECLARATION = "declaration"
    DOCUMENT = "document"


class RollTableError(Exception):
    """Base class for all engine errors"""

    kind: ErrorKind = ErrorKind.RESOLUTION

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class ParseError(RollTableError):
    """Malformed directive syntax"""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, expression: str = "", position: int = -1):
        self.expression = expression
        self.position = position
        if expression:
            message = f"{message} in '{expression}'"
        super().__init__(message)


class ResolutionError(RollTableError):
    """Unknown table, template, alias, variable or collection"""

    kind = ErrorKind.RESOLUTION

    def __init__(self, message: str, identifier: str = ""):
        self.identifier = identifier
        super().__init__(message)


class DepthExceededError(RollTableError):
    """Recursion or inheritance chain went past its configured limit"""

    kind = ErrorKind.DEPTH_EXCEEDED

    def __init__(self, what: str, limit: int, chain: Sequence[str]):
        self.what = what
        self.limit = limit
        self.chain = list(chain)
        path = " -> ".join(self.chain) if self.chain else "<root>"
        super().__init__(f"{what} limit exceeded (max: {limit}): {path}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"limit": self.limit, "chain": self.chain})
        return data


class SelectionError(RollTableError):
    """Empty or zero-weight pool, or unique overflow under the 'error' policy"""

    kind = ErrorKind.SELECTION


class DeclarationError(RollTableError):
    """Shared variable shadowing, forward reference or cyclic reference"""

    kind = ErrorKind.DECLARATION

    def __init__(self, message: str, name: str = ""):
        self.name = name
        super().__init__(message)


class DocumentError(RollTableError):
    """Document lacks required fields or is otherwise structurally invalid"""

    kind = ErrorKind.DOCUMENT

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = list(issues or [])
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["issues"] = self.issues
        return data
