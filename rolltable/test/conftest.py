"""
pytest 配置文件

提供测试用的 fixtures 和配置
"""
import copy
import random

import pytest

from rolltable import EngineConfig, RollEngine, RollOptions


FANTASY_DOCUMENT = {
    "metadata": {"name": "Fantasy", "namespace": "test.fantasy", "version": "1.0.0"},
    "variables": {"realm": "Eldoria", "party_size": "2"},
    "shared": {"hero": "{{race}}"},
    "tables": [
        {"id": "color", "name": "Color", "entries": [
            {"id": "red", "value": "red"},
            {"id": "green", "value": "green"},
            {"id": "blue", "value": "blue"},
        ]},
        {"id": "race", "entries": [
            {"id": "elf", "value": "Elf"},
            {"id": "dwarf", "value": "Dwarf"},
            {"id": "human", "value": "Human"},
        ]},
        {"id": "weapon", "resultType": "item", "entries": [
            {"id": "sword", "value": "Sword", "description": "A {{color}} blade",
             "sets": {"damage": "1d8", "material": "steel"}, "assets": {"icon": "sword.png"}},
            {"id": "axe", "value": "Axe", "sets": {"damage": "1d10", "material": "iron"}},
        ]},
        {"id": "d6_band", "entries": [
            {"range": [1, 2], "value": "low"},
            {"range": [3, 4], "value": "mid"},
            {"range": [5, 6], "value": "high"},
        ]},
        {"id": "fixed", "entries": [{"value": "only"}]},
        {"id": "reroll", "entries": [
            {"id": "plain", "value": "X"},
            {"id": "again", "value": "{{again}} twice"},
        ]},
        {"id": "loop", "entries": [{"value": "again {{loop}}"}]},
        {"id": "npc", "shared": {"name": "{{race}}"}, "entries": [
            {"value": "{{$name}} meets {{$name}}"},
        ]},
        {"id": "monster_pool", "type": "collection", "hidden": True,
         "collections": ["race", "color"]},
        {"id": "either", "type": "composite", "resultType": "mixed", "sources": [
            {"tableId": "race", "weight": 1},
            {"tableId": "color", "weight": 1},
        ]},
        {"id": "secret", "hidden": True, "entries": [{"value": "hidden"}]},
    ],
    "templates": [
        {"id": "greeting", "name": "Greeting", "pattern": "Hello from {{$realm}}, {{race}}!"},
    ],
}


LOOT_DOCUMENT = {
    "metadata": {"name": "Loot", "namespace": "test.loot"},
    "imports": [{"path": "test.fantasy", "alias": "fan"}],
    "tables": [
        {"id": "loot", "entries": [{"value": "{{fan.weapon}} of {{fan.color}}"}]},
    ],
    "templates": [
        {"id": "banner", "pattern": "{{$fan.realm}} banner"},
    ],
}


def build_document(tables, namespace="test.doc", metadata=None, **extra):
    """组装一个最小的集合文档"""
    document = {
        "metadata": {"name": "Doc", "namespace": namespace, **(metadata or {})},
        "tables": tables,
    }
    document.update(extra)
    return document


@pytest.fixture
def make_document():
    """提供文档构造函数"""
    return build_document


@pytest.fixture
def fantasy_document():
    """提供示例 fantasy 文档 (深拷贝)"""
    return copy.deepcopy(FANTASY_DOCUMENT)


@pytest.fixture
def loot_document():
    """提供引用 fantasy 的 loot 文档"""
    return copy.deepcopy(LOOT_DOCUMENT)


@pytest.fixture
def engine():
    """提供空的 RollEngine 实例"""
    return RollEngine(EngineConfig())


@pytest.fixture
def fantasy_engine(engine, fantasy_document):
    """提供已加载 fantasy 文档的 RollEngine 实例"""
    engine.load_collection("fantasy", fantasy_document)
    return engine


@pytest.fixture
def options():
    """提供固定种子的 RollOptions 工厂"""
    def factory(seed=1234, **kwargs):
        return RollOptions(seed=seed, **kwargs)
    return factory


@pytest.fixture
def rng():
    """提供固定种子的随机数生成器"""
    return random.Random(20240501)


class MaxRandom(random.Random):
    """randint 总是返回最大值"""

    def randint(self, a, b):
        return b


@pytest.fixture
def max_rng():
    return MaxRandom()


# pytest 配置
def pytest_configure(config):
    """pytest 配置"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """为没有标记的测试添加 unit 标记"""
    for item in items:
        if not any(item.iter_markers()):
            item.add_marker(pytest.mark.unit)
