"""Roll Table Engine

Procedural text generation from declarative collection documents.

This package provides:
- Collection document models and load-time validation
- Directive parsing for {{...}} patterns (dice, math, tables, captures, ...)
- Weighted, ranged, composite and pooled table selection
- Pattern evaluation with a structured roll trace

Usage:
    from rolltable import RollEngine, RollOptions

    engine = RollEngine()
    engine.load_collection("fantasy", document)
    result = engine.evaluate_raw_pattern("{{dice:2d6}} {{monster}}", "fantasy",
                                         RollOptions(seed=42))
    print(result.text)
"""

from .config import EngineConfig
from .engine import (
    CollectionInfo, EvaluationResult, ImportedInfo, LoadResult, RollEngine, RollOptions,
    TableInfo, TemplateInfo,
)
from .errors import (
    DeclarationError, DepthExceededError, DocumentError, ErrorKind, ParseError,
    ResolutionError, RollTableError, SelectionError,
)
from .export import ExportBundle, document_to_json, namespace_to_filename, resolve_export_closure
from .lexer import ExpressionMatch, PatternScanner, extract_expressions
from .logging_config import get_logger, setup_logging
from .models import CollectionDocument
from .parser import classify_expression, parse_directive
from .validation import DocumentValidator, parse_document

__version__ = "1.0.0"

__all__ = [
    'RollEngine',
    'RollOptions',
    'EvaluationResult',
    'LoadResult',
    'CollectionInfo',
    'TableInfo',
    'TemplateInfo',
    'ImportedInfo',
    'EngineConfig',
    'CollectionDocument',
    'DocumentValidator',
    'parse_document',
    'ExportBundle',
    'resolve_export_closure',
    'document_to_json',
    'namespace_to_filename',
    'ExpressionMatch',
    'PatternScanner',
    'extract_expressions',
    'classify_expression',
    'parse_directive',
    'get_logger',
    'setup_logging',
    # errors
    'RollTableError',
    'ErrorKind',
    'ParseError',
    'ResolutionError',
    'DepthExceededError',
    'SelectionError',
    'DeclarationError',
    'DocumentError',
]
