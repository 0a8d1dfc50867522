"""Roll Engine - public entry points

RollEngine owns the registry of loaded collections and exposes:
- loading/unloading documents and wiring their imports
- registry introspection (collections, tables, templates, imported ones)
- roll(), roll_template() and evaluate_raw_pattern()

Every evaluation builds a fresh EvaluationContext, so calls never share
mutable state. Engine errors never escape an evaluation: they come back in
EvaluationResult.error together with the segments and trace produced before
the failure.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .conditionals import apply_conditionals
from .config import EngineConfig
from .context import EvaluationContext
from .errors import ResolutionError, RollTableError
from .evaluator import EvaluatedSegment, PatternEvaluator, RollOutcome
from .export import ExportBundle, resolve_export_closure
from .logging_config import get_logger
from .models import CollectionDocument, CaptureItem, SimpleTable
from .resolver import CollectionRegistry, LoadedCollection, TableResolver
from .trace import RollTrace, TraceBuilder
from .validation import DocumentValidator, parse_document


logger = get_logger(__name__)


@dataclass
class RollOptions:
    enable_trace: bool = True
    # extra document-level shared declarations for this call only
    shared: Optional[Dict[str, str]] = None
    seed: Optional[int] = None
    rng: Optional[random.Random] = None

    def make_rng(self) -> random.Random:
        if self.rng is not None:
            return self.rng
        return random.Random(self.seed)


@dataclass
class EvaluationResult:
    """Outcome of one public evaluation call"""
    ok: bool
    text: str = ""
    segments: List[EvaluatedSegment] = field(default_factory=list)
    trace: Optional[RollTrace] = None
    captures: Dict[str, dict] = field(default_factory=dict)
    descriptions: List[dict] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    result_type: Optional[str] = None
    assets: Dict[str, str] = field(default_factory=dict)
    placeholders: Dict[str, Any] = field(default_factory=dict)
    entry_id: Optional[str] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "text": self.text,
            "segments": [segment.to_dict() for segment in self.segments],
            "captures": self.captures,
            "descriptions": self.descriptions,
        }
        if self.trace is not None:
            data["trace"] = self.trace.to_dict()
        if self.error is not None:
            data["error"] = self.error
        if self.result_type:
            data["resultType"] = self.result_type
        if self.assets:
            data["assets"] = self.assets
        if self.placeholders:
            data["placeholders"] = self.placeholders
        if self.entry_id:
            data["entryId"] = self.entry_id
        return data


@dataclass
class LoadResult:
    ok: bool
    collection_id: str
    error: Optional[Dict[str, Any]] = None


@dataclass
class CollectionInfo:
    id: str
    name: str
    namespace: str
    version: str
    table_count: int
    template_count: int
    source_path: Optional[str] = None


@dataclass
class TableInfo:
    id: str
    name: str
    type: str
    collection_id: str
    description: Optional[str] = None
    result_type: Optional[str] = None
    hidden: bool = False
    entry_count: int = 0
    tags: List[str] = field(default_factory=list)


@dataclass
class TemplateInfo:
    id: str
    name: str
    collection_id: str
    description: Optional[str] = None
    result_type: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class ImportedInfo:
    """A table or template reachable through one or more import aliases"""
    alias_path: str
    full_id: str
    item: Union[TableInfo, TemplateInfo]


def _table_info(table, collection_id: str) -> TableInfo:
    return TableInfo(
        id=table.id,
        name=table.display_name,
        type=table.type,
        collection_id=collection_id,
        description=table.description,
        result_type=table.result_type,
        hidden=table.hidden,
        entry_count=len(table.entries) if isinstance(table, SimpleTable) else 0,
        tags=list(table.tags),
    )


def _template_info(template, collection_id: str) -> TemplateInfo:
    return TemplateInfo(
        id=template.id,
        name=template.display_name,
        collection_id=collection_id,
        description=template.description,
        result_type=template.result_type,
        tags=list(template.tags),
    )


Run = Callable[[EvaluationContext, List[EvaluatedSegment]], RollOutcome]


class RollEngine:
    """Loads collection documents and evaluates patterns against them"""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.registry = CollectionRegistry()
        self.resolver = TableResolver(self.registry, self.config)
        self.evaluator = PatternEvaluator(self.resolver)
        self.validator = DocumentValidator()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_collection(self, collection_id: str,
                        document: Union[CollectionDocument, Dict[str, Any]],
                        source_path: Optional[str] = None) -> LoadedCollection:
        """Validate and register a document; raises DocumentError"""
        if isinstance(document, CollectionDocument):
            result = self.validator.validate(document)
            for warning in result.warnings:
                logger.warning(f"{collection_id}: {warning}")
            result.raise_for_errors()
        else:
            document = parse_document(document)

        loaded = self.registry.add(collection_id, document, source_path)
        logger.info(
            f"Loaded collection '{collection_id}' ({document.metadata.namespace}): "
            f"{len(document.tables)} tables, {len(document.templates)} templates"
        )
        return loaded

    def load_from_json(self, collection_id: str, text: Union[str, bytes],
                       source_path: Optional[str] = None) -> LoadResult:
        try:
            self.load_collection(collection_id, parse_document(text, validate=False), source_path)
        except RollTableError as e:
            logger.warning(f"Failed to load collection '{collection_id}': {e.message}")
            return LoadResult(False, collection_id, e.to_dict())
        return LoadResult(True, collection_id)

    def unload(self, collection_id: str) -> bool:
        removed = self.registry.remove(collection_id)
        if removed:
            logger.info(f"Unloaded collection '{collection_id}'")
        return removed

    def resolve_imports(self, path_to_id: Optional[Dict[str, str]] = None) -> Dict[str, List[str]]:
        """Wire every import alias to a loaded collection

        Import paths are matched by the explicit path->id map first, then by
        namespace, then by collection id. Returns the unresolved import paths
        per collection id.
        """
        path_to_id = path_to_id or {}
        unresolved: Dict[str, List[str]] = {}
        for collection in self.registry:
            collection.import_map.clear()
            for imp in collection.document.imports:
                target = self._import_target(imp.path, path_to_id)
                if target is None or target.id == collection.id:
                    unresolved.setdefault(collection.id, []).append(imp.path)
                    continue
                collection.import_map[imp.alias] = target.id
                logger.info(f"Import '{imp.alias}' of '{collection.id}' -> '{target.id}'")

        for collection_id, paths in unresolved.items():
            logger.warning(f"Unresolved imports in '{collection_id}': {', '.join(paths)}")
        return unresolved

    def _import_target(self, path: str, path_to_id: Dict[str, str]) -> Optional[LoadedCollection]:
        if path in path_to_id:
            target = self.registry.get(path_to_id[path])
            if target is not None:
                return target
        target = self.registry.find_by_namespace(path)
        if target is not None:
            return target
        return self.registry.get(path)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_collection(self, collection_id: str) -> bool:
        return collection_id in self.registry

    def get_collection(self, collection_id: str) -> Optional[LoadedCollection]:
        return self.registry.get(collection_id)

    def list_collections(self) -> List[CollectionInfo]:
        return [
            CollectionInfo(
                id=c.id,
                name=c.name,
                namespace=c.namespace,
                version=c.document.metadata.version,
                table_count=len(c.tables),
                template_count=len(c.templates),
                source_path=c.source_path,
            )
            for c in self.registry
        ]

    def list_tables(self, collection_id: str, include_hidden: bool = False) -> List[TableInfo]:
        collection = self.registry.require(collection_id)
        return [
            _table_info(table, collection_id)
            for table in collection.document.tables
            if include_hidden or not table.hidden
        ]

    def list_templates(self, collection_id: str) -> List[TemplateInfo]:
        collection = self.registry.require(collection_id)
        return [_template_info(t, collection_id) for t in collection.document.templates]

    def list_imported_tables(self, collection_id: str) -> List[ImportedInfo]:
        """Tables reachable through imports, transitively, as 'alias[.alias].id'"""
        return self._walk_imports(collection_id, lambda c: [
            _table_info(t, c.id) for t in c.document.tables if not t.hidden
        ])

    def list_imported_templates(self, collection_id: str) -> List[ImportedInfo]:
        return self._walk_imports(collection_id, lambda c: [
            _template_info(t, c.id) for t in c.document.templates
        ])

    def _walk_imports(self, collection_id: str,
                      items: Callable[[LoadedCollection], list]) -> List[ImportedInfo]:
        found: List[ImportedInfo] = []
        visited: Set[str] = {collection_id}

        def walk(current_id: str, prefix: str):
            current = self.registry.require(current_id)
            for imp in current.document.imports:
                target = self.resolver.alias_collection(imp.alias, current_id)
                if target is None or target.id in visited:
                    continue
                visited.add(target.id)
                path = f"{prefix}.{imp.alias}" if prefix else imp.alias
                for item in items(target):
                    found.append(ImportedInfo(path, f"{path}.{item.id}", item))
                walk(target.id, path)

        walk(collection_id, "")
        return found

    def export_bundle(self, collection_id: str) -> ExportBundle:
        """The collection plus every document it imports, for export"""
        return resolve_export_closure(self.registry.require(collection_id).document, self.registry)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def roll(self, table_id: str, collection_id: str,
             options: Optional[RollOptions] = None) -> EvaluationResult:
        """Roll one table and return its text plus result metadata"""
        def run(ctx: EvaluationContext, segments: List[EvaluatedSegment]) -> RollOutcome:
            resolved = self.resolver.resolve(table_id, collection_id)
            if resolved.is_template:
                raise ResolutionError(f"'{table_id}' is a template, not a table", table_id)
            return self.evaluator.roll_resolved(resolved, ctx)

        return self._evaluate(collection_id, options, f"roll {table_id}", run)

    def roll_template(self, template_id: str, collection_id: str,
                      options: Optional[RollOptions] = None) -> EvaluationResult:
        def run(ctx: EvaluationContext, segments: List[EvaluatedSegment]) -> RollOutcome:
            resolved = self.resolver.resolve(template_id, collection_id)
            if not resolved.is_template:
                raise ResolutionError(f"'{template_id}' is a table, not a template", template_id)
            return self.evaluator.roll_resolved(resolved, ctx)

        return self._evaluate(collection_id, options, f"template {template_id}", run)

    def evaluate_raw_pattern(self, pattern: str, collection_id: str,
                             options: Optional[RollOptions] = None) -> EvaluationResult:
        """Evaluate an arbitrary pattern in the context of a loaded collection"""
        def run(ctx: EvaluationContext, segments: List[EvaluatedSegment]) -> RollOutcome:
            text = self.evaluator.evaluate_segments(pattern, ctx, collection_id, segments)
            return RollOutcome(text, collection_id=collection_id)

        return self._evaluate(collection_id, options, "pattern", run, track_segments=True)

    def _evaluate(self, collection_id: str, options: Optional[RollOptions], label: str,
                  run: Run, track_segments: bool = False) -> EvaluationResult:
        options = options or RollOptions()
        trace = TraceBuilder(options.enable_trace, label)
        segments: List[EvaluatedSegment] = []
        ctx: Optional[EvaluationContext] = None

        try:
            collection = self.registry.require(collection_id)
            ctx = EvaluationContext(
                config=self.config.merged_with(collection.document.metadata),
                collection_id=collection_id,
                rng=options.make_rng(),
                trace=trace,
                statics=dict(collection.document.variables),
            )
            self.evaluator.prepare(ctx, options.shared)
            outcome = run(ctx, segments)
            text = apply_conditionals(collection.document.conditionals, outcome.text,
                                      self.evaluator, ctx, collection_id,
                                      segments if track_segments else None)
        except RollTableError as e:
            logger.info(f"Evaluation of {label} in '{collection_id}' failed: {e.message}")
            return EvaluationResult(
                ok=False,
                text="",
                segments=segments,
                trace=trace.finish("", e.message),
                captures=ctx.captures.to_dict() if ctx else {},
                descriptions=[d.to_dict() for d in ctx.sorted_descriptions()] if ctx else [],
                error=e.to_dict(),
            )

        return EvaluationResult(
            ok=True,
            text=text,
            segments=segments,
            trace=trace.finish(text),
            captures=ctx.captures.to_dict(),
            descriptions=[d.to_dict() for d in ctx.sorted_descriptions()],
            result_type=outcome.result_type,
            assets=dict(outcome.assets),
            placeholders={
                key: value.model_dump() if isinstance(value, CaptureItem) else value
                for key, value in outcome.placeholders.items()
            },
            entry_id=outcome.entry_id,
        )
