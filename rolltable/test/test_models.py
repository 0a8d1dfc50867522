"""
测试 models.py 中的文档模型
"""
import pytest
from pydantic import ValidationError

from rolltable.models import (
    CaptureItem, CaptureVariable, CollectionDocument, CollectionTable, CompositeTable,
    Entry, Import, SimpleTable,
)


class TestEntry:
    """测试 Entry 模型"""

    def test_default_weight(self):
        """测试默认权重为 1"""
        entry = Entry(value="x")
        assert entry.effective_weight == 1.0
        assert Entry(value="x", weight=0).effective_weight == 0.0

    def test_weight_and_range_exclusive(self):
        """测试 weight 与 range 互斥"""
        with pytest.raises(ValidationError):
            Entry.model_validate({"value": "x", "weight": 2, "range": [1, 3]})

    def test_range_order(self):
        """测试 range 起点不能大于终点"""
        with pytest.raises(ValidationError):
            Entry.model_validate({"value": "x", "range": [5, 1]})

    def test_negative_weight(self):
        """测试权重不能为负"""
        with pytest.raises(ValidationError):
            Entry(value="x", weight=-1)

    def test_camel_case_aliases(self):
        """测试 camelCase 字段"""
        entry = Entry.model_validate({"value": "x", "resultType": "item", "range": [1, 2]})
        assert entry.result_type == "item"
        assert entry.roll_range == (1, 2)

    def test_frozen(self):
        """测试模型不可变"""
        entry = Entry(value="x")
        with pytest.raises(ValidationError):
            entry.value = "y"


class TestTables:
    """测试表的标签联合"""

    def make(self, tables):
        return CollectionDocument.model_validate({
            "metadata": {"name": "T", "namespace": "t"},
            "tables": tables,
        })

    def test_type_defaults_to_simple(self):
        """测试缺省 type 为 simple"""
        document = self.make([{"id": "a", "entries": [{"value": "x"}]}])
        assert isinstance(document.tables[0], SimpleTable)

    def test_union_dispatch(self):
        """测试按 type 分派"""
        document = self.make([
            {"id": "a", "entries": [{"value": "x"}]},
            {"id": "b", "type": "composite", "sources": [{"tableId": "a"}]},
            {"id": "c", "type": "collection", "collections": ["a"]},
        ])
        assert isinstance(document.tables[1], CompositeTable)
        assert document.tables[1].sources[0].effective_weight == 1.0
        assert isinstance(document.tables[2], CollectionTable)

    def test_range_mode(self):
        """测试 range 模式识别"""
        document = self.make([{"id": "a", "entries": [{"range": [1, 3], "value": "x"}]}])
        assert document.tables[0].is_range_mode

    def test_display_name(self):
        """测试显示名回退到 id"""
        document = self.make([{"id": "a", "entries": [{"value": "x"}]}])
        assert document.tables[0].display_name == "a"

    def test_unknown_type_rejected(self):
        """测试未知表类型"""
        with pytest.raises(ValidationError):
            self.make([{"id": "a", "type": "weird"}])


class TestDocument:
    """测试集合文档"""

    def test_missing_metadata(self):
        """测试缺少 metadata"""
        with pytest.raises(ValidationError):
            CollectionDocument.model_validate({"tables": []})

    def test_blank_namespace(self):
        """测试空 namespace"""
        with pytest.raises(ValidationError):
            CollectionDocument.model_validate({
                "metadata": {"name": "T", "namespace": "  "}, "tables": [],
            })

    def test_import_alias_without_dots(self):
        """测试导入别名不能含点"""
        assert Import(path="a.b", alias="ab").alias == "ab"
        with pytest.raises(ValidationError):
            Import(path="a.b", alias="a.b")

    def test_metadata_limits(self):
        """测试元数据中的限制"""
        document = CollectionDocument.model_validate({
            "metadata": {"name": "T", "namespace": "t", "maxRecursionDepth": 3,
                         "uniqueOverflowBehavior": "cycle"},
            "tables": [],
        })
        assert document.metadata.max_recursion_depth == 3
        assert document.metadata.unique_overflow_behavior == "cycle"

    def test_to_json_dict(self, fantasy_document):
        """测试导出为 camelCase JSON"""
        document = CollectionDocument.model_validate(fantasy_document)
        data = document.to_json_dict()
        assert data["metadata"]["namespace"] == "test.fantasy"
        weapon = next(t for t in data["tables"] if t["id"] == "weapon")
        assert weapon["resultType"] == "item"
        band = next(t for t in data["tables"] if t["id"] == "d6_band")
        assert band["entries"][0]["range"] == [1, 2]
        assert CollectionDocument.model_validate(data).to_json_dict() == data


class TestCaptures:
    """测试捕获模型"""

    def test_nested_items(self):
        """测试嵌套捕获项"""
        inner = CaptureItem(value="Bob", sets={"title": "Sir"})
        item = CaptureItem(value="Castle", sets={"owner": inner})
        variable = CaptureVariable(items=[item, CaptureItem(value="Hut")])
        assert variable.count == 2
        assert variable.items[0].sets["owner"].sets["title"] == "Sir"
