"""Export helpers

resolve_export_closure() collects a document together with every document
it imports, transitively, from a registry without modifying it. Import
paths that match no loaded collection are reported as dangling.
"""

import io
import json
import re
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .logging_config import get_logger
from .models import CollectionDocument
from .resolver import CollectionRegistry, LoadedCollection


logger = get_logger(__name__)


@dataclass
class ExportBundle:
    primary: CollectionDocument
    # collection id -> imported document, in discovery order
    dependencies: Dict[str, CollectionDocument] = field(default_factory=dict)
    dangling: List[str] = field(default_factory=list)

    @property
    def documents(self) -> List[CollectionDocument]:
        return [self.primary, *self.dependencies.values()]

    @property
    def complete(self) -> bool:
        return not self.dangling

    def files(self, indent: Optional[int] = 2) -> Dict[str, str]:
        """File name -> JSON text for every document of the bundle"""
        files: Dict[str, str] = {}
        for document in self.documents:
            name = namespace_to_filename(document.metadata.namespace)
            candidate, n = f"{name}.json", 2
            while candidate in files:
                candidate, n = f"{name}-{n}.json", n + 1
            files[candidate] = document_to_json(document, indent)
        return files

    def to_zip_bytes(self, indent: Optional[int] = 2) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, text in self.files(indent).items():
                archive.writestr(name, text)
        return buffer.getvalue()


def _import_target(registry: CollectionRegistry, importer: Optional[LoadedCollection],
                   alias: str, path: str) -> Optional[LoadedCollection]:
    if importer is not None and alias in importer.import_map:
        target = registry.get(importer.import_map[alias])
        if target is not None:
            return target
    target = registry.find_by_namespace(path)
    if target is not None:
        return target
    return registry.get(path)


def resolve_export_closure(primary: CollectionDocument,
                           registry: CollectionRegistry) -> ExportBundle:
    """The primary document plus the transitive closure of its imports"""
    bundle = ExportBundle(primary)
    primary_loaded = registry.find_by_namespace(primary.metadata.namespace)
    visited: Set[str] = {primary_loaded.id} if primary_loaded else set()
    pending = [(primary, primary_loaded)]

    while pending:
        document, loaded = pending.pop(0)
        for imp in document.imports:
            target = _import_target(registry, loaded, imp.alias, imp.path)
            if target is None:
                if imp.path not in bundle.dangling:
                    bundle.dangling.append(imp.path)
                continue
            if target.id in visited:
                continue
            visited.add(target.id)
            bundle.dependencies[target.id] = target.document
            pending.append((target.document, target))

    if bundle.dangling:
        logger.warning(f"Export of '{primary.metadata.namespace}' has dangling imports: "
                       f"{', '.join(bundle.dangling)}")
    return bundle


def document_to_json(document: CollectionDocument, indent: Optional[int] = 2) -> str:
    return json.dumps(document.to_json_dict(), indent=indent, ensure_ascii=False)


def namespace_to_filename(namespace: str) -> str:
    """'My.Name Space' -> 'my-namespace'"""
    name = namespace.lower().replace(".", "-")
    name = re.sub(r"[^a-z0-9-]", "", name)
    name = re.sub(r"-+", "-", name).strip("-")
    return name or "collection"
