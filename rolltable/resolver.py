"""Table Resolver - registry of loaded collections and identifier lookup

Identifier forms:
- id                 local template, then local table
- alias.id           table/template of the collection an import alias points at
- namespace.id       table/template of the loaded collection with that namespace

Simple tables with 'extends' are merged over their parent chain. Entries are
matched by id (entries without one get a generated '<tableId><index:03>' id
and are therefore appended). Resolved tables are cached per registry.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .config import EngineConfig
from .errors import DepthExceededError, DocumentError, ResolutionError
from .logging_config import get_logger
from .models import (
    CollectionDocument, CollectionTable, CompositeTable, Entry, SimpleTable, Template,
)


logger = get_logger(__name__)

AnyTable = Union[SimpleTable, CompositeTable, CollectionTable]


@dataclass
class LoadedCollection:
    """A document registered under a collection id"""
    id: str
    document: CollectionDocument
    source_path: Optional[str] = None
    # import alias -> collection id, filled by resolve_imports
    import_map: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.tables: Dict[str, AnyTable] = {t.id: t for t in self.document.tables}
        self.templates: Dict[str, Template] = {t.id: t for t in self.document.templates}

    @property
    def namespace(self) -> str:
        return self.document.metadata.namespace

    @property
    def name(self) -> str:
        return self.document.metadata.name


@dataclass(frozen=True)
class ResolvedRef:
    """A table or template found by the resolver"""
    kind: str  # "table" | "template"
    definition: Union[AnyTable, Template]
    collection_id: str

    @property
    def is_template(self) -> bool:
        return self.kind == "template"

    @property
    def id(self) -> str:
        return self.definition.id


class CollectionRegistry:
    """Loaded collections keyed by id, with unique namespaces"""

    def __init__(self):
        self._collections: Dict[str, LoadedCollection] = {}
        self._inheritance_cache: Dict[Tuple[str, str], SimpleTable] = {}

    def add(self, collection_id: str, document: CollectionDocument,
            source_path: Optional[str] = None) -> LoadedCollection:
        namespace = document.metadata.namespace
        for other in self._collections.values():
            if other.id != collection_id and other.namespace == namespace:
                raise DocumentError(
                    f"Namespace '{namespace}' is already used by collection '{other.id}'",
                    [f"metadata.namespace: duplicate '{namespace}'"],
                )
        if collection_id in self._collections:
            logger.warning(f"Replacing already loaded collection '{collection_id}'")

        loaded = LoadedCollection(collection_id, document, source_path)
        self._collections[collection_id] = loaded
        self._inheritance_cache.clear()
        return loaded

    def remove(self, collection_id: str) -> bool:
        removed = self._collections.pop(collection_id, None)
        if removed is None:
            return False
        for other in self._collections.values():
            for alias, target in list(other.import_map.items()):
                if target == collection_id:
                    del other.import_map[alias]
        self._inheritance_cache.clear()
        return True

    def get(self, collection_id: str) -> Optional[LoadedCollection]:
        return self._collections.get(collection_id)

    def require(self, collection_id: str) -> LoadedCollection:
        collection = self._collections.get(collection_id)
        if collection is None:
            raise ResolutionError(f"Collection not found: '{collection_id}'", collection_id)
        return collection

    def find_by_namespace(self, namespace: str) -> Optional[LoadedCollection]:
        for collection in self._collections.values():
            if collection.namespace == namespace:
                return collection
        return None

    def ids(self) -> List[str]:
        return list(self._collections)

    def __iter__(self) -> Iterator[LoadedCollection]:
        return iter(list(self._collections.values()))

    def __contains__(self, collection_id: str) -> bool:
        return collection_id in self._collections

    def __len__(self) -> int:
        return len(self._collections)

    def cached_table(self, collection_id: str, table_id: str) -> Optional[SimpleTable]:
        return self._inheritance_cache.get((collection_id, table_id))

    def cache_table(self, collection_id: str, table: SimpleTable):
        self._inheritance_cache[(collection_id, table.id)] = table


def entry_key(table_id: str, index: int, entry: Entry) -> str:
    return entry.id or f"{table_id}{index:03d}"


def with_entry_ids(table: SimpleTable) -> SimpleTable:
    """Copy of the table where every entry carries an id"""
    if all(entry.id for entry in table.entries):
        return table
    entries = [
        entry if entry.id else entry.model_copy(update={"id": entry_key(table.id, i, entry)})
        for i, entry in enumerate(table.entries)
    ]
    return table.model_copy(update={"entries": entries})


def merge_entry(parent: Entry, child: Entry) -> Entry:
    """Child fields that were explicitly given override the parent's"""
    update = {name: getattr(child, name) for name in child.model_fields_set}
    if "roll_range" in update and "weight" not in update:
        update["weight"] = None
    if "weight" in update and "roll_range" not in update:
        update["roll_range"] = None
    update["id"] = parent.id
    return parent.model_copy(update=update)


class TableResolver:
    """Resolves identifiers against the registry on behalf of one collection"""

    def __init__(self, registry: CollectionRegistry, config: Optional[EngineConfig] = None):
        self.registry = registry
        self.config = config or EngineConfig()

    # -- identifier lookup ---------------------------------------------------

    def resolve(self, identifier: str, collection_id: str) -> ResolvedRef:
        found = self.find(identifier, collection_id)
        if found is None:
            raise ResolutionError(
                f"Table or template not found: '{identifier}' (in collection '{collection_id}')",
                identifier,
            )
        return found

    def find(self, identifier: str, collection_id: str) -> Optional[ResolvedRef]:
        collection = self.registry.require(collection_id)

        local = self._find_local(identifier, collection)
        if local is not None:
            return local

        if "." not in identifier:
            return None

        alias, rest = identifier.split(".", 1)
        target_id = self._alias_target(collection, alias)
        if target_id is not None:
            found = self.find(rest, target_id)
            if found is not None:
                return found

        parts = identifier.split(".")
        for split in range(len(parts) - 1, 0, -1):
            namespace = ".".join(parts[:split])
            target = self.registry.find_by_namespace(namespace)
            if target is not None:
                found = self._find_local(".".join(parts[split:]), target)
                if found is not None:
                    return found
        return None

    def _find_local(self, identifier: str, collection: LoadedCollection) -> Optional[ResolvedRef]:
        template = collection.templates.get(identifier)
        if template is not None:
            return ResolvedRef("template", template, collection.id)
        table = collection.tables.get(identifier)
        if table is not None:
            return ResolvedRef("table", table, collection.id)
        return None

    def _alias_target(self, collection: LoadedCollection, alias: str) -> Optional[str]:
        """Collection id an import alias points at

        Falls back to matching the import path against namespaces and ids when
        imports were never wired with resolve_imports().
        """
        if alias in collection.import_map:
            return collection.import_map[alias]
        for imp in collection.document.imports:
            if imp.alias != alias:
                continue
            for other in self.registry:
                if other.id == collection.id:
                    continue
                if other.namespace == imp.path or other.id == imp.path:
                    return other.id
        return None

    def alias_collection(self, alias: str, collection_id: str) -> Optional[LoadedCollection]:
        target_id = self._alias_target(self.registry.require(collection_id), alias)
        return self.registry.get(target_id) if target_id else None

    # -- inheritance ---------------------------------------------------------

    def resolve_inheritance(self, table: SimpleTable, collection_id: str,
                            depth: int = 0, chain: Optional[List[str]] = None) -> SimpleTable:
        cached = self.registry.cached_table(collection_id, table.id)
        if cached is not None:
            return cached

        chain = (chain or []) + [table.id]
        if not table.extends:
            resolved = with_entry_ids(table)
            self.registry.cache_table(collection_id, resolved)
            return resolved

        limit = self._inheritance_limit(collection_id)
        if depth >= limit:
            raise DepthExceededError("Inheritance depth", limit, chain + [table.extends])

        parent_ref = self.find(table.extends, collection_id)
        if parent_ref is None or parent_ref.is_template:
            raise ResolutionError(
                f"Parent table not found: '{table.extends}' for table '{table.id}'",
                table.extends,
            )
        if not isinstance(parent_ref.definition, SimpleTable):
            raise ResolutionError(
                f"Cannot extend non-simple table: '{table.extends}' "
                f"(type: {parent_ref.definition.type})",
                table.extends,
            )

        parent = self.resolve_inheritance(
            parent_ref.definition, parent_ref.collection_id, depth + 1, chain
        )

        merged: Dict[str, Entry] = {entry.id: entry for entry in parent.entries}
        for i, entry in enumerate(table.entries):
            key = entry_key(table.id, i, entry)
            if key in merged:
                merged[key] = merge_entry(merged[key], entry)
            else:
                merged[key] = entry.model_copy(update={"id": key})

        default_sets = {**(parent.default_sets or {}), **(table.default_sets or {})}
        resolved = table.model_copy(update={
            "entries": list(merged.values()),
            "default_sets": default_sets or None,
            "result_type": table.result_type or parent.result_type,
            "extends": None,
        })
        self.registry.cache_table(collection_id, resolved)
        logger.debug(f"Resolved inheritance {' -> '.join(chain)} ({len(resolved.entries)} entries)")
        return resolved

    def _inheritance_limit(self, collection_id: str) -> int:
        collection = self.registry.get(collection_id)
        metadata = collection.document.metadata if collection else None
        return self.config.merged_with(metadata).max_inheritance_depth

    # -- collection tables ---------------------------------------------------

    def collection_members(self, table: CollectionTable,
                           collection_id: str) -> List[Tuple[SimpleTable, str]]:
        """Member tables of a collection table, each with inheritance applied"""
        members: List[Tuple[SimpleTable, str]] = []
        for member_id in table.collections:
            ref = self.resolve(member_id, collection_id)
            if ref.is_template or not isinstance(ref.definition, SimpleTable):
                raise ResolutionError(
                    f"Collection table '{table.id}' member '{member_id}' is not a simple table",
                    member_id,
                )
            members.append((self.resolve_inheritance(ref.definition, ref.collection_id),
                            ref.collection_id))
        return members

    # -- variables -----------------------------------------------------------

    def imported_variable(self, alias: str, name: str, collection_id: str) -> Optional[str]:
        target = self.alias_collection(alias, collection_id)
        if target is None:
            return None
        return target.document.variables.get(name)
