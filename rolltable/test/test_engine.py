"""
测试 engine.py 中的公共入口
"""
import io
import json
import logging

import pytest

from rolltable import RollEngine, RollOptions, setup_logging
from rolltable.errors import DocumentError


@pytest.fixture
def linked_engine(fantasy_engine, loot_document):
    """提供同时加载 fantasy 与 loot 的引擎"""
    fantasy_engine.load_collection("loot", loot_document)
    return fantasy_engine


class TestLoading:
    """测试集合加载"""

    def test_load_and_unload(self, engine, fantasy_document):
        """测试加载与卸载"""
        loaded = engine.load_collection("fantasy", fantasy_document, "fantasy.json")
        assert loaded.namespace == "test.fantasy"
        assert engine.has_collection("fantasy")
        info = engine.list_collections()[0]
        assert (info.id, info.table_count, info.template_count) == ("fantasy", 11, 1)
        assert info.source_path == "fantasy.json"
        assert engine.unload("fantasy")
        assert not engine.unload("fantasy")
        assert engine.get_collection("fantasy") is None

    def test_load_from_json(self, engine, fantasy_document):
        """测试从 JSON 文本加载"""
        result = engine.load_from_json("fantasy", json.dumps(fantasy_document))
        assert result.ok
        assert result.error is None

    def test_load_invalid_json(self, engine):
        """测试无效 JSON"""
        result = engine.load_from_json("bad", "{not json")
        assert not result.ok
        assert result.error["kind"] == "document"
        assert result.error["issues"][0].startswith("line 1")
        assert not engine.has_collection("bad")

    def test_load_invalid_utf8(self, engine):
        """测试非法 UTF-8 字节"""
        result = engine.load_from_json("bad", b'{"metadata": {"name": "\xff\xfe"}}')
        assert not result.ok
        assert result.error["kind"] == "document"
        assert not engine.has_collection("bad")

    def test_load_schema_error(self, engine):
        """测试缺少必需字段"""
        result = engine.load_from_json("bad", json.dumps({"metadata": {"name": "x"}}))
        assert not result.ok
        assert result.error["kind"] == "document"
        assert any(issue.startswith("metadata.namespace") for issue in result.error["issues"])

    def test_load_integrity_error(self, engine, make_document):
        """测试完整性检查失败时抛出 DocumentError"""
        with pytest.raises(DocumentError):
            engine.load_collection("bad", make_document([{"id": "empty", "entries": []}]))

    def test_namespace_conflict(self, fantasy_engine, fantasy_document):
        """测试命名空间冲突"""
        with pytest.raises(DocumentError):
            fantasy_engine.load_collection("copy", fantasy_document)


class TestIntrospection:
    """测试注册表查询"""

    def test_list_tables_hidden(self, fantasy_engine):
        """测试隐藏表过滤"""
        visible = {t.id for t in fantasy_engine.list_tables("fantasy")}
        assert "secret" not in visible
        assert "monster_pool" not in visible
        everything = {t.id for t in fantasy_engine.list_tables("fantasy", include_hidden=True)}
        assert {"secret", "monster_pool"} <= everything

    def test_table_info(self, fantasy_engine):
        """测试表信息"""
        info = {t.id: t for t in fantasy_engine.list_tables("fantasy")}
        assert info["color"].name == "Color"
        assert info["race"].name == "race"
        assert info["weapon"].result_type == "item"
        assert info["weapon"].entry_count == 2
        assert info["either"].type == "composite"

    def test_list_templates(self, fantasy_engine):
        """测试模板列表"""
        templates = fantasy_engine.list_templates("fantasy")
        assert [(t.id, t.name) for t in templates] == [("greeting", "Greeting")]

    def test_imported_tables(self, linked_engine):
        """测试导入表列表"""
        imported = {i.full_id for i in linked_engine.list_imported_tables("loot")}
        assert "fan.color" in imported
        assert "fan.secret" not in imported
        templates = linked_engine.list_imported_templates("loot")
        assert [t.full_id for t in templates] == ["fan.greeting"]

    def test_imported_tables_transitive(self, linked_engine, make_document):
        """测试多级导入路径"""
        linked_engine.load_collection("hoard", make_document(
            [{"id": "pile", "entries": [{"value": "{{lt.loot}}"}]}],
            namespace="test.hoard",
            imports=[{"path": "test.loot", "alias": "lt"}],
        ))
        imported = {i.full_id for i in linked_engine.list_imported_tables("hoard")}
        assert {"lt.loot", "lt.fan.color"} <= imported

    def test_resolve_imports(self, linked_engine, make_document):
        """测试导入连接与悬空导入"""
        linked_engine.load_collection("orphan", make_document(
            [{"id": "x", "entries": [{"value": "x"}]}],
            namespace="test.orphan",
            imports=[{"path": "test.missing", "alias": "gone"}],
        ))
        unresolved = linked_engine.resolve_imports()
        assert unresolved == {"orphan": ["test.missing"]}
        assert linked_engine.get_collection("loot").import_map == {"fan": "fantasy"}

    def test_resolve_imports_explicit_map(self, linked_engine, make_document):
        """测试显式路径映射"""
        linked_engine.load_collection("alt", make_document(
            [{"id": "x", "entries": [{"value": "x"}]}],
            namespace="test.alt",
            imports=[{"path": "somewhere/fantasy.json", "alias": "f"}],
        ))
        unresolved = linked_engine.resolve_imports({"somewhere/fantasy.json": "fantasy"})
        assert "alt" not in unresolved
        assert linked_engine.get_collection("alt").import_map == {"f": "fantasy"}


class TestRolling:
    """测试掷表入口"""

    def test_roll_result_metadata(self, fantasy_engine):
        """测试 resultType, assets 与占位符"""
        for seed in range(30):
            result = fantasy_engine.roll("weapon", "fantasy", RollOptions(seed=seed))
            if result.entry_id == "sword":
                break
        else:
            pytest.fail("sword was never rolled")
        assert result.ok
        assert result.text == "Sword"
        assert result.result_type == "item"
        assert result.assets == {"icon": "sword.png"}
        assert result.placeholders == {"damage": "1d8", "material": "steel"}
        data = result.to_dict()
        assert data["resultType"] == "item"
        assert data["entryId"] == "sword"

    def test_composite_result_type(self, fantasy_engine):
        """测试组合表的 resultType"""
        result = fantasy_engine.roll("either", "fantasy", RollOptions(seed=3))
        assert result.result_type == "mixed"

    def test_roll_template(self, fantasy_engine):
        """测试模板入口"""
        result = fantasy_engine.roll_template("greeting", "fantasy", RollOptions(seed=3))
        assert result.ok
        assert result.text.startswith("Hello from Eldoria")

    def test_roll_kind_mismatch(self, fantasy_engine):
        """测试表与模板入口不能混用"""
        assert fantasy_engine.roll("greeting", "fantasy").error["kind"] == "resolution"
        assert fantasy_engine.roll_template("color", "fantasy").error["kind"] == "resolution"

    def test_import_alias_roll(self, linked_engine):
        """测试通过别名掷导入的表"""
        result = linked_engine.roll("loot", "loot", RollOptions(seed=5))
        assert result.ok
        weapon, color = result.text.split(" of ")
        assert weapon in {"Sword", "Axe"}
        assert color in {"red", "green", "blue"}

    def test_imported_variable(self, linked_engine):
        """测试导入的静态变量"""
        assert linked_engine.roll_template("banner", "loot").text == "Eldoria banner"

    def test_unknown_table(self, fantasy_engine):
        """测试未知表返回错误结果并保留部分片段"""
        result = fantasy_engine.evaluate_raw_pattern("ok {{race}} {{nope}} tail", "fantasy")
        assert not result.ok
        assert result.text == ""
        assert result.error["kind"] == "resolution"
        assert [s.type for s in result.segments] == ["literal", "expression", "literal"]
        assert result.trace.root.error

    def test_unknown_collection(self, engine):
        """测试未知集合"""
        result = engine.evaluate_raw_pattern("{{x}}", "missing")
        assert not result.ok
        assert result.error["kind"] == "resolution"
        assert result.captures == {}

    def test_parse_error(self, fantasy_engine):
        """测试语法错误"""
        result = fantasy_engine.evaluate_raw_pattern("{{dice:}}", "fantasy")
        assert result.error["kind"] == "parse"
        assert result.trace.root.children[0].type == "parse_error"

    def test_seed_determinism(self, fantasy_engine):
        """测试相同种子结果一致"""
        pattern = "{{race}} {{color}} {{dice:3d6}} {{weapon}}"
        first = fantasy_engine.evaluate_raw_pattern(pattern, "fantasy", RollOptions(seed=99))
        second = fantasy_engine.evaluate_raw_pattern(pattern, "fantasy", RollOptions(seed=99))
        assert first.text == second.text

    def test_calls_isolated(self, fantasy_engine):
        """测试调用之间不共享捕获变量"""
        fantasy_engine.evaluate_raw_pattern("{{color >> $c}}", "fantasy")
        result = fantasy_engine.evaluate_raw_pattern("{{$c}}", "fantasy")
        assert not result.ok

    def test_result_to_dict(self, fantasy_engine):
        """测试结果序列化"""
        data = fantasy_engine.evaluate_raw_pattern("{{color}}", "fantasy").to_dict()
        assert data["ok"] is True
        assert data["segments"][0]["kind"] == "table"
        assert "trace" in data
        json.dumps(data)


class TestLogging:
    """测试日志配置"""

    @pytest.fixture(autouse=True)
    def restore_logger(self):
        logger = logging.getLogger("rolltable")
        handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
        yield
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate

    def test_json_logging(self, fantasy_document):
        """测试 JSON 日志输出"""
        stream = io.StringIO()
        setup_logging("INFO", "json", stream)
        RollEngine().load_collection("fantasy", fantasy_document)
        record = json.loads(stream.getvalue().splitlines()[0])
        assert record["level"] == "INFO"
        assert record["logger"] == "rolltable.engine"
        assert "Loaded collection 'fantasy'" in record["message"]

    def test_text_logging(self):
        """测试文本日志级别过滤"""
        stream = io.StringIO()
        logger = setup_logging("WARNING", "text", stream)
        logger.info("hidden")
        logger.warning("shown")
        output = stream.getvalue()
        assert "hidden" not in output
        assert "[WARNING ] rolltable: shown" in output
