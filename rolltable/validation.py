"""Load-time document validation

parse_document() turns JSON text or a dict into a CollectionDocument, raising
DocumentError (with one issue per problem) instead of raw pydantic or json
exceptions. DocumentValidator then checks integrity rules the schema alone
cannot express: unique ids and aliases, range tables that partition their
span without gaps or overlaps, and references to parent/source/member tables.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from .errors import DocumentError
from .logging_config import get_logger
from .models import CollectionDocument, CollectionTable, CompositeTable, SimpleTable


logger = get_logger(__name__)


@dataclass
class ValidationIssue:
    severity: str  # "error" | "warning"
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, path: str, message: str):
        self.issues.append(ValidationIssue("error", path, message))

    def warning(self, path: str, message: str):
        self.issues.append(ValidationIssue("warning", path, message))

    def raise_for_errors(self):
        if self.errors:
            raise DocumentError(
                f"Document is invalid ({len(self.errors)} error(s))",
                [str(issue) for issue in self.errors],
            )


class DocumentValidator:
    """Integrity checks over a parsed CollectionDocument"""

    def validate(self, document: CollectionDocument) -> ValidationResult:
        result = ValidationResult()
        self._check_imports(document, result)
        self._check_ids(document, result)
        for index, table in enumerate(document.tables):
            path = f"tables[{index}]({table.id})"
            if isinstance(table, SimpleTable):
                self._check_simple(table, document, path, result)
            elif isinstance(table, CompositeTable):
                self._check_composite(table, document, path, result)
            elif isinstance(table, CollectionTable):
                self._check_collection(table, document, path, result)
        self._check_shared(document, result)
        return result

    def _check_imports(self, document: CollectionDocument, result: ValidationResult):
        seen: Dict[str, int] = {}
        for index, imp in enumerate(document.imports):
            if imp.alias in seen:
                result.error(f"imports[{index}]", f"duplicate import alias '{imp.alias}'")
            seen[imp.alias] = index

    def _check_ids(self, document: CollectionDocument, result: ValidationResult):
        table_ids = set()
        for index, table in enumerate(document.tables):
            if table.id in table_ids:
                result.error(f"tables[{index}]", f"duplicate table id '{table.id}'")
            table_ids.add(table.id)

        template_ids = set()
        for index, template in enumerate(document.templates):
            if template.id in template_ids:
                result.error(f"templates[{index}]", f"duplicate template id '{template.id}'")
            if template.id in table_ids:
                result.warning(f"templates[{index}]",
                               f"template '{template.id}' hides the table with the same id")
            template_ids.add(template.id)

    def _check_simple(self, table: SimpleTable, document: CollectionDocument, path: str,
                      result: ValidationResult):
        entry_ids = set()
        for index, entry in enumerate(table.entries):
            if entry.id:
                if entry.id in entry_ids:
                    result.error(f"{path}.entries[{index}]", f"duplicate entry id '{entry.id}'")
                entry_ids.add(entry.id)

        if table.extends:
            if table.extends == table.id:
                result.error(path, "table extends itself")
            else:
                self._check_reference(table.extends, document, f"{path}.extends", result,
                                      require_simple=True)
        elif not table.entries:
            result.error(path, "simple table has no entries")

        if table.is_range_mode:
            self._check_ranges(table, path, result)
        elif table.entries and all(entry.effective_weight == 0 for entry in table.entries):
            result.warning(path, "every entry has weight 0")

    def _check_ranges(self, table: SimpleTable, path: str, result: ValidationResult):
        ranged = [(i, e.roll_range) for i, e in enumerate(table.entries) if e.roll_range is not None]
        if len(ranged) != len(table.entries):
            result.error(path, "range tables need a range on every entry")
            return

        ordered = sorted(ranged, key=lambda item: item[1][0])
        for (prev_index, prev), (index, current) in zip(ordered, ordered[1:]):
            if current[0] <= prev[1]:
                result.error(f"{path}.entries[{index}]",
                             f"range {list(current)} overlaps range {list(prev)}")
            elif current[0] > prev[1] + 1:
                result.error(f"{path}.entries[{index}]",
                             f"gap between {prev[1]} and {current[0]}")

    def _check_composite(self, table: CompositeTable, document: CollectionDocument, path: str,
                         result: ValidationResult):
        if not table.sources:
            result.error(path, "composite table has no sources")
        for index, source in enumerate(table.sources):
            if source.table_id == table.id:
                result.error(f"{path}.sources[{index}]", "composite table lists itself")
                continue
            self._check_reference(source.table_id, document, f"{path}.sources[{index}]", result)

    def _check_collection(self, table: CollectionTable, document: CollectionDocument, path: str,
                          result: ValidationResult):
        if not table.collections:
            result.error(path, "collection table has no member tables")
        for index, member in enumerate(table.collections):
            self._check_reference(member, document, f"{path}.collections[{index}]", result,
                                  require_simple=True)

    def _check_reference(self, ref: str, document: CollectionDocument, path: str,
                         result: ValidationResult, require_simple: bool = False):
        local = next((t for t in document.tables if t.id == ref), None)
        if local is not None:
            if require_simple and not isinstance(local, SimpleTable):
                result.error(path, f"'{ref}' is a {local.type} table, expected a simple table")
            return
        if "." in ref:
            alias = ref.split(".", 1)[0]
            if any(imp.alias == alias for imp in document.imports):
                return
            # namespace-qualified references are checked when rolled
            result.warning(path, f"'{ref}' does not use a declared import alias")
            return
        result.error(path, f"unknown table '{ref}'")

    def _check_shared(self, document: CollectionDocument, result: ValidationResult):
        for key in document.shared:
            name = key[1:] if key.startswith("$") else key
            if name in document.variables:
                result.error(f"shared.{key}", f"shared variable '{name}' shadows a static variable")


def parse_document(data: Union[str, bytes, Dict[str, Any]], validate: bool = True) -> CollectionDocument:
    """Parse and validate a collection document"""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise DocumentError(f"Invalid JSON: {e.msg}", [f"line {e.lineno}, column {e.colno}: {e.msg}"]) from e
        except UnicodeDecodeError as e:
            raise DocumentError("Invalid UTF-8 input", [f"byte {e.start}: {e.reason}"]) from e

    if not isinstance(data, dict):
        raise DocumentError("Collection document must be a JSON object")

    try:
        document = CollectionDocument.model_validate(data)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in e.errors()
        ]
        raise DocumentError(f"Document does not match the collection schema ({len(issues)} issue(s))",
                            issues) from e

    if validate:
        result = DocumentValidator().validate(document)
        for warning in result.warnings:
            logger.warning(f"{document.metadata.namespace}: {warning}")
        result.raise_for_errors()
    return document
