"""
测试 dice.py 中的骰子记法与掷骰
"""
import random

import pytest

from rolltable.dice import DiceNotationError, DiceRoller, parse_notation, roll_dice
from rolltable.errors import ParseError


class TestParseNotation:
    """测试骰子记法解析"""

    @pytest.mark.parametrize("text,count,sides", [
        ("1d6", 1, 6),
        ("d20", 1, 20),
        ("3D8", 3, 8),
        (" 2d10 ", 2, 10),
    ])
    def test_basic(self, text, count, sides):
        """测试基本记法"""
        spec = parse_notation(text)
        assert (spec.count, spec.sides) == (count, sides)
        assert spec.exploding is False

    def test_modifiers(self):
        """测试保留与修正值"""
        assert parse_notation("4d6k3").keep == ("h", 3)
        assert parse_notation("4d6kl1").keep == ("l", 1)
        assert parse_notation("2d6+3").modifier == ("+", 3)
        assert parse_notation("2d6 - 1").modifier == ("-", 1)
        assert parse_notation("1d4*10").modifier == ("*", 10)
        assert parse_notation("1d6!").exploding is True

    @pytest.mark.parametrize("text", ["", "abc", "d", "0d6", "1d0", "2d6+", "4d6k0"])
    def test_invalid(self, text):
        """测试非法记法"""
        with pytest.raises(DiceNotationError):
            parse_notation(text)

    def test_error_is_parse_error(self):
        """测试 DiceNotationError 属于 ParseError"""
        assert issubclass(DiceNotationError, ParseError)


class TestDiceRoller:
    """测试掷骰"""

    def test_bounds_1d6(self):
        """测试 1d6 总在 [1, 6]"""
        roller = DiceRoller(random.Random(1))
        totals = {roller.roll_notation("1d6").total for _ in range(500)}
        assert totals == {1, 2, 3, 4, 5, 6}

    def test_bounds_2d6(self):
        """测试 2d6 总在 [2, 12]"""
        roller = DiceRoller(random.Random(2))
        for _ in range(500):
            total = roller.roll_notation("2d6").total
            assert 2 <= total <= 12

    def test_keep_highest_and_modifier(self, max_rng):
        """测试保留最高与修正"""
        result = DiceRoller(max_rng).roll_notation("4d6kh3+2")
        assert result.rolls == [6, 6, 6, 6]
        assert result.kept == [6, 6, 6]
        assert result.total == 20

    def test_keep_lowest(self):
        """测试保留最低"""
        result = DiceRoller(random.Random(5)).roll_notation("4d6kl1")
        assert result.total == min(result.rolls)

    def test_multiply(self, max_rng):
        """测试乘法修正"""
        assert DiceRoller(max_rng).roll_notation("1d4*10").total == 40

    def test_exploding_cap_is_per_directive(self, max_rng):
        """测试爆骰次数上限按整条指令计算"""
        result = DiceRoller(max_rng, max_exploding=5).roll_notation("3d6!")
        assert result.explosions == 5
        assert len(result.rolls) == 8
        assert result.total == 48

    def test_exploding_without_max(self):
        """测试没有最大值时不爆骰"""
        class LowRandom(random.Random):
            def randint(self, a, b):
                return a

        result = DiceRoller(LowRandom()).roll_notation("2d6!")
        assert result.explosions == 0
        assert result.total == 2

    def test_breakdown_and_dict(self, max_rng):
        """测试结果描述"""
        result = roll_dice("2d6+1", max_rng)
        assert result.breakdown == "[6, 6] + 1 = 13"
        data = result.to_dict()
        assert data["notation"] == "2d6+1"
        assert data["total"] == 13

    def test_seeded_is_reproducible(self):
        """测试相同种子结果相同"""
        first_roller = DiceRoller(random.Random(99))
        second_roller = DiceRoller(random.Random(99))
        first = [first_roller.roll_notation("3d6").total for _ in range(10)]
        second = [second_roller.roll_notation("3d6").total for _ in range(10)]
        assert first == second
