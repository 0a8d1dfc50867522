"""Collection document models

Pydantic models for the JSON collection format: metadata, imports, tables
(simple / composite / collection), templates, variables, shared variables
and conditionals. Field names are snake_case in Python and camelCase on the
wire; both spellings are accepted when loading.
"""

from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator, model_validator
)
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Metadata(DocumentModel):
    name: str
    namespace: str
    version: str = "1.0.0"
    spec_version: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    max_recursion_depth: Optional[int] = Field(default=None, ge=1)
    max_exploding_dice: Optional[int] = Field(default=None, ge=0)
    max_inheritance_depth: Optional[int] = Field(default=None, ge=1)
    unique_overflow_behavior: Optional[Literal["stop", "cycle", "error"]] = None

    @field_validator("namespace")
    @classmethod
    def _namespace_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("namespace must not be empty")
        return value


class Import(DocumentModel):
    path: str
    alias: str
    description: Optional[str] = None

    @field_validator("alias")
    @classmethod
    def _alias_has_no_dots(cls, value: str) -> str:
        if not value or "." in value:
            raise ValueError(f"import alias must be a non-empty token without dots: '{value}'")
        return value


class SourceAttribution(DocumentModel):
    book: Optional[str] = None
    page: Optional[Union[int, str]] = None
    url: Optional[str] = None
    license: Optional[str] = None


class Entry(DocumentModel):
    """One row of a simple table"""
    value: Optional[str] = None
    weight: Optional[float] = Field(default=None, ge=0)
    roll_range: Optional[Tuple[int, int]] = Field(default=None, alias="range")
    id: Optional[str] = None
    description: Optional[str] = None
    result_type: Optional[str] = None
    sets: Dict[str, str] = Field(default_factory=dict)
    assets: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _weight_or_range(self) -> "Entry":
        if self.weight is not None and self.roll_range is not None:
            raise ValueError("entry may declare either 'weight' or 'range', not both")
        if self.roll_range is not None and self.roll_range[0] > self.roll_range[1]:
            raise ValueError(f"range start must not exceed end: {list(self.roll_range)}")
        return self

    @property
    def effective_weight(self) -> float:
        return 1.0 if self.weight is None else self.weight


class TableBase(DocumentModel):
    id: str
    name: str = ""
    description: Optional[str] = None
    result_type: Optional[str] = None
    hidden: bool = False
    shared: Optional[Dict[str, str]] = None
    default_sets: Optional[Dict[str, str]] = None
    source: Optional[SourceAttribution] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class SimpleTable(TableBase):
    type: Literal["simple"] = "simple"
    entries: List[Entry] = Field(default_factory=list)
    extends: Optional[str] = None

    @property
    def is_range_mode(self) -> bool:
        return any(entry.roll_range is not None for entry in self.entries)


class CompositeSource(DocumentModel):
    table_id: str
    weight: Optional[float] = Field(default=None, ge=0)

    @property
    def effective_weight(self) -> float:
        return 1.0 if self.weight is None else self.weight


class CompositeTable(TableBase):
    type: Literal["composite"]
    sources: List[CompositeSource]


class CollectionTable(TableBase):
    type: Literal["collection"]
    collections: List[str]


def _table_type(value) -> str:
    if isinstance(value, dict):
        return value.get("type", "simple")
    return getattr(value, "type", "simple")


Table = Annotated[
    Union[
        Annotated[SimpleTable, Tag("simple")],
        Annotated[CompositeTable, Tag("composite")],
        Annotated[CollectionTable, Tag("collection")],
    ],
    Discriminator(_table_type),
]


class Template(DocumentModel):
    id: str
    name: str = ""
    pattern: str
    description: Optional[str] = None
    result_type: Optional[str] = None
    shared: Optional[Dict[str, str]] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Conditional(DocumentModel):
    when: str
    action: Literal["append", "prepend", "replace", "setVariable"]
    target: Optional[str] = None
    value: str = ""


class CollectionDocument(DocumentModel):
    metadata: Metadata
    imports: List[Import] = Field(default_factory=list)
    tables: List[Table]
    templates: List[Template] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    shared: Dict[str, str] = Field(default_factory=dict)
    conditionals: List[Conditional] = Field(default_factory=list)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class CaptureItem(BaseModel):
    """One structured roll result: rolled text plus its resolved sets"""
    value: str
    sets: Dict[str, Union[str, "CaptureItem"]] = Field(default_factory=dict)
    description: Optional[str] = None


class CaptureVariable(BaseModel):
    """All items produced by one capture directive"""
    items: List[CaptureItem] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)


CaptureItem.model_rebuild()
