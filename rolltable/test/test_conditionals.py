"""
测试 conditionals.py 中的文档条件规则
"""
import pytest

from rolltable import RollOptions


@pytest.fixture
def load(engine, make_document):
    """加载带条件规则的文档"""
    def loader(*conditionals):
        engine.load_collection("doc", make_document(
            [{"id": "fixed", "entries": [{"value": "only"}]}],
            conditionals=list(conditionals),
        ))
        return engine
    return loader


def roll(engine):
    return engine.roll("fixed", "doc", RollOptions(seed=1))


class TestConditionals:
    """测试条件规则"""

    def test_append(self, load):
        """测试追加"""
        engine = load({"when": '$ == "only"', "action": "append", "value": "!"})
        assert roll(engine).text == "only!"

    def test_prepend(self, load):
        """测试前置"""
        engine = load({"when": '$ == "only"', "action": "prepend", "value": "the "})
        assert roll(engine).text == "the only"

    def test_replace_target(self, load):
        """测试按正则替换"""
        engine = load({"when": '$ == "only"', "action": "replace", "target": "on", "value": "ON"})
        assert roll(engine).text == "ONly"

    def test_replace_whole(self, load):
        """测试整体替换"""
        engine = load({"when": '$ != ""', "action": "replace", "value": "{{math:1+2}}"})
        assert roll(engine).text == "3"

    def test_invalid_regex(self, load):
        """测试无效正则保持原文本"""
        engine = load({"when": '$ == "only"', "action": "replace", "target": "(", "value": "x"})
        assert roll(engine).text == "only"

    def test_not_matched(self, load):
        """测试条件不成立"""
        engine = load({"when": '$ == "other"', "action": "append", "value": "!"})
        result = roll(engine)
        assert result.text == "only"
        assert result.trace.conditionals[0].value is False

    def test_set_variable_then_use(self, load):
        """测试设置共享变量后被后续规则使用"""
        engine = load(
            {"when": '$ == "only"', "action": "setVariable", "target": "mood", "value": "calm"},
            {"when": '$mood == "calm"', "action": "append", "value": " ({{$mood}})"},
        )
        assert roll(engine).text == "only (calm)"

    def test_applied_in_order(self, load):
        """测试规则按顺序应用"""
        engine = load(
            {"when": '$ == "only"', "action": "append", "value": "1"},
            {"when": '$ == "only1"', "action": "append", "value": "2"},
        )
        assert roll(engine).text == "only12"

    def test_detached_trace(self, load):
        """测试条件节点不计入根节点子节点"""
        engine = load({"when": '$ == "only"', "action": "append", "value": "!"})
        result = engine.evaluate_raw_pattern("{{fixed}}", "doc")
        assert len(result.trace.root.children) == 1
        assert len(result.trace.conditionals) == 1
        assert result.trace.conditionals[0].type == "conditional"
        assert result.trace.to_dict()["conditionals"][0]["output"]["value"] is True


class TestConditionalSegments:
    """测试条件规则与结果片段"""

    def segments(self, engine, pattern="[{{fixed}}]"):
        result = engine.evaluate_raw_pattern(pattern, "doc")
        assert "".join(s.text for s in result.segments) == result.text
        return result

    def test_prepend(self, load):
        """测试前置文本成为首个片段"""
        result = self.segments(load({"when": '$ != ""', "action": "prepend", "value": "> "}))
        assert result.text == "> [only]"
        first = result.segments[0]
        assert (first.type, first.text, first.start, first.end) == ("conditional", "> ", 0, 0)
        assert result.segments[1].type == "literal"

    def test_replace_collapses(self, load):
        """测试替换后片段合并为一个"""
        engine = load({"when": '$ != ""', "action": "replace", "target": "only", "value": "ONLY"})
        result = self.segments(engine)
        assert result.text == "[ONLY]"
        assert len(result.segments) == 1
        segment = result.segments[0].to_dict()
        assert segment["type"] == "conditional"
        assert (segment["start"], segment["end"]) == (0, len("[{{fixed}}]"))
        assert segment["kind"] == "replace"

    def test_unmatched_leaves_segments(self, load):
        """测试未匹配的规则不改变片段"""
        result = self.segments(load({"when": '$ == "x"', "action": "append", "value": "!"}))
        assert [s.type for s in result.segments] == ["literal", "expression", "literal"]

    def test_roll_has_no_segments(self, load):
        """测试掷表结果不产生片段"""
        engine = load({"when": '$ != ""', "action": "append", "value": "!"})
        assert roll(engine).segments == []
