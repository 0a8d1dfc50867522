"""
测试 parser.py 中的指令分类与解析
"""
import pytest

from rolltable.ast_nodes import (
    AgainDirective, CaptureAccessDirective, CaptureDirective, CaptureSharedDirective,
    CollectDirective, DiceDirective, DirectiveKind, MathDirective, MultiRollDirective,
    PlaceholderDirective, SwitchDirective, TableDirective, UniqueDirective,
    VariableDirective,
)
from rolltable.errors import ParseError
from rolltable.parser import (
    DirectiveParser, classify_expression, parse_directive, parse_expression,
    split_top_level,
)


class Scope:
    """最小的表达式作用域"""

    def __init__(self, variables=None, placeholders=None, subject=None):
        self.variables = variables or {}
        self.placeholders = placeholders or {}
        self.subject = subject

    def resolve_variable(self, name):
        return self.variables[name]

    def resolve_placeholder(self, name, prop):
        return self.placeholders[(name, prop)]


CLASSIFY_CASES = [
    ("dice:2d6", DirectiveKind.DICE),
    ("math:1+2", DirectiveKind.MATH),
    ("collect:$x.@a", DirectiveKind.COLLECT),
    ("3*monster >> $m", DirectiveKind.CAPTURE),
    ("$x.@name", DirectiveKind.CAPTURE_SHARED),
    ("$x[0]", DirectiveKind.CAPTURE_ACCESS),
    ("$x.count", DirectiveKind.CAPTURE_ACCESS),
    ('$x|" / "', DirectiveKind.CAPTURE_ACCESS),
    ("$hero", DirectiveKind.VARIABLE),
    ("$alias.name", DirectiveKind.VARIABLE),
    ("@weapon.damage", DirectiveKind.PLACEHOLDER),
    ("again", DirectiveKind.AGAIN),
    ("2*unique*again", DirectiveKind.AGAIN),
    ("unique:3:monster", DirectiveKind.UNIQUE),
    ("3*monster", DirectiveKind.MULTI_ROLL),
    ("d4*monster", DirectiveKind.MULTI_ROLL),
    ("$n*monster", DirectiveKind.MULTI_ROLL),
    ("switch[$x==1:'a']", DirectiveKind.SWITCH),
    ("$x.switch[$=='a':'b']", DirectiveKind.SWITCH),
    ("monster", DirectiveKind.TABLE),
    ("alias.monster", DirectiveKind.TABLE),
    ("some.namespace.monster", DirectiveKind.TABLE),
    ("monster#boss", DirectiveKind.TABLE),
]


class TestClassify:
    """测试指令分类"""

    @pytest.mark.parametrize("text,kind", CLASSIFY_CASES)
    def test_classify(self, text, kind):
        """测试每种指令的分类"""
        assert classify_expression(text) == kind

    def test_unknown_identifier_is_still_table(self):
        """测试分类不依赖文档内容"""
        assert classify_expression("does_not_exist_anywhere") == DirectiveKind.TABLE
        directive = parse_directive("does_not_exist_anywhere")
        assert isinstance(directive, TableDirective)


class TestDirectiveParser:
    """测试指令解析"""

    def setup_method(self):
        self.parser = DirectiveParser()

    def test_dice(self):
        """测试骰子指令"""
        directive = self.parser.parse("dice:3d6!kh2+1")
        assert isinstance(directive, DiceDirective)
        assert directive.spec.count == 3
        assert directive.spec.exploding is True
        assert directive.spec.keep == ("h", 2)
        assert directive.spec.modifier == ("+", 1)

    def test_math(self):
        """测试数学指令"""
        directive = self.parser.parse("math: (2 + 3) * 4")
        assert isinstance(directive, MathDirective)
        assert directive.expression.evaluate(Scope()) == 20

    def test_instance(self):
        """测试命名实例"""
        directive = self.parser.parse("race#leader")
        assert directive.ref == "race"
        assert directive.instance == "leader"

    def test_multi_roll_with_separator(self):
        """测试多次掷表与分隔符"""
        directive = self.parser.parse('3*monster|" / "')
        assert isinstance(directive, MultiRollDirective)
        assert directive.count.literal == 3
        assert directive.ref == "monster"
        assert directive.separator == " / "
        assert directive.unique is False

    def test_multi_roll_counts(self):
        """测试变量与骰子次数"""
        by_variable = self.parser.parse("$n*unique*monster")
        assert by_variable.count.variable == "n"
        assert by_variable.count.source == "variable"
        assert by_variable.unique is True

        by_dice = self.parser.parse("1d4*monster")
        assert by_dice.count.dice.sides == 4
        assert by_dice.count.source == "dice"

    def test_unique(self):
        """测试 unique 指令"""
        directive = self.parser.parse('unique:2:color|"; "')
        assert isinstance(directive, UniqueDirective)
        assert directive.count == 2
        assert directive.separator == "; "

    def test_again(self):
        """测试 again 指令"""
        directive = self.parser.parse("2*unique*again")
        assert isinstance(directive, AgainDirective)
        assert directive.count == 2
        assert directive.unique is True

    def test_variables(self):
        """测试变量与导入变量"""
        plain = self.parser.parse("$hero")
        assert isinstance(plain, VariableDirective)
        assert plain.name == "hero" and plain.alias is None

        imported = self.parser.parse("$fan.realm")
        assert imported.name == "realm" and imported.alias == "fan"

    def test_capture_access(self):
        """测试捕获访问"""
        indexed = self.parser.parse("$loot[-1]")
        assert isinstance(indexed, CaptureAccessDirective)
        assert indexed.index == -1

        count = self.parser.parse("$loot.count")
        assert count.attribute == "count"

        joined = self.parser.parse('$loot|" and "')
        assert joined.separator == " and "

    def test_capture_shared_chain(self):
        """测试捕获属性链"""
        directive = self.parser.parse("$loot[1].@owner.@name")
        assert isinstance(directive, CaptureSharedDirective)
        assert directive.index == 1
        assert directive.properties == ("owner", "name")

    def test_placeholder(self):
        """测试占位符"""
        directive = self.parser.parse("@weapon.damage")
        assert isinstance(directive, PlaceholderDirective)
        assert (directive.name, directive.prop) == ("weapon", "damage")
        assert self.parser.parse("@weapon").prop is None

    def test_capture(self):
        """测试捕获指令"""
        directive = self.parser.parse('2*unique*monster >> $m|silent|" - "')
        assert isinstance(directive, CaptureDirective)
        assert directive.variable == "m"
        assert directive.unique is True
        assert directive.silent is True
        assert directive.separator == " - "

        single = self.parser.parse("monster >> $one")
        assert single.count.literal == 1

    def test_collect(self):
        """测试 collect 指令"""
        directive = self.parser.parse("collect:$m.@material|unique")
        assert isinstance(directive, CollectDirective)
        assert directive.from_sets is True
        assert directive.prop == "material"
        assert directive.unique is True

        values = self.parser.parse("collect:$m.value")
        assert values.from_sets is False

        descriptions = self.parser.parse("collect:$m.@description")
        assert descriptions.from_sets is False
        assert descriptions.prop == "description"

    def test_switch(self):
        """测试带主体的 switch"""
        directive = self.parser.parse('$roll.switch[$ > 3:"big"].else["small"]')
        assert isinstance(directive, SwitchDirective)
        assert isinstance(directive.subject, VariableDirective)
        assert len(directive.branches) == 1
        assert directive.branches[0].result.literal == "big"
        assert directive.default.literal == "small"

    def test_switch_chain_and_nested_result(self):
        """测试多分支与嵌套指令结果"""
        directive = self.parser.parse(
            'switch[@g.value == "m":"he"].switch[@g.value == "f":"she"].else[pronoun]'
        )
        assert len(directive.branches) == 2
        assert directive.subject is None
        assert isinstance(directive.default.directive, TableDirective)
        assert directive.default.directive.ref == "pronoun"

    @pytest.mark.parametrize("text", [
        "dice:",
        "dice:banana",
        "unique:x:y",
        'switch[$x==1:"a"',
        "switch[]",
        "math:1 +",
        "math:",
        "bad table!",
        "collect:$x.@",
        "3*monster >> hero",
        "$x.@a.b",
        "math:nosuch(1)",
        "3*monster|weird",
    ])
    def test_malformed(self, text):
        """测试语法错误抛出 ParseError"""
        with pytest.raises(ParseError):
            self.parser.parse(text)


class TestExpressionParser:
    """测试表达式解析与求值"""

    @pytest.mark.parametrize("text,expected", [
        ("2 + 3 * 4", 14),
        ("(2 + 3) * 4", 20),
        ("10 % 4", 2),
        ("-3 + 5", 2),
        ("floor(7 / 2)", 3),
        ("ceil(7 / 2)", 4),
        ("round(2.5)", 3),
        ("round(-2.5)", -3),
        ("abs(-4)", 4),
        ("max(1, 9, 3)", 9),
        ("min(4, 2)", 2),
    ])
    def test_arithmetic(self, text, expected):
        """测试算术优先级与内置函数"""
        assert parse_expression(text).evaluate(Scope()) == expected

    def test_comparisons(self):
        """测试比较运算"""
        scope = Scope(variables={"hp": "12", "name": "Elf Ranger"})
        assert parse_expression("$hp > 10").evaluate(scope) is True
        assert parse_expression("$hp == 12").evaluate(scope) is True
        assert parse_expression("$name contains 'ranger'").evaluate(scope) is True
        assert parse_expression("$name matches '^elf'").evaluate(scope) is True
        assert parse_expression("$name == Elf").evaluate(scope) is False

    def test_logical_short_circuit(self):
        """测试 && 与 || 短路"""
        scope = Scope(variables={"a": "1"})
        # $missing 不会被求值
        assert parse_expression("$a == 1 || $missing == 2").evaluate(scope) is True
        assert parse_expression("$a == 2 && $missing == 2").evaluate(scope) is False
        assert parse_expression("!($a == 2)").evaluate(scope) is True

    def test_subject_and_placeholder(self):
        """测试 switch 主体与占位符"""
        scope = Scope(placeholders={("weapon", "damage"): "1d8"}, subject="5")
        assert parse_expression("$ >= 5").evaluate(scope) is True
        assert parse_expression("@weapon.damage == '1d8'").evaluate(scope) is True

    def test_non_numeric_ordering_is_false(self):
        """测试非数字的大小比较为假"""
        scope = Scope(variables={"name": "Elf"})
        assert parse_expression("$name > 1").evaluate(scope) is False
        assert parse_expression("$name < 1").evaluate(scope) is False

    def test_division_by_zero(self):
        """测试除零"""
        with pytest.raises(ParseError):
            parse_expression("1 / 0").evaluate(Scope())

    def test_non_numeric_math(self):
        """测试非数字参与算术"""
        with pytest.raises(ParseError):
            parse_expression("'abc' * 2").evaluate(Scope())

    def test_dependencies(self):
        """测试依赖收集"""
        node = parse_expression("$a + @b.c * max($d, 1)")
        assert node.get_dependencies() == ["$a", "@b.c", "$d"]


class TestSplitTopLevel:
    """测试顶层分割"""

    def test_respects_quotes_and_brackets(self):
        """测试引号与方括号中的分隔符被忽略"""
        assert split_top_level('a|"x|y"|b', "|") == ["a", '"x|y"', "b"]
        assert split_top_level("s[a|b]|c", "|") == ["s[a|b]", "c"]

    def test_double_pipe_is_operator(self):
        """测试 || 不作为分隔符"""
        assert split_top_level("a || b|c", "|") == ["a || b", "c"]

    def test_maxsplit(self):
        """测试最大分割次数"""
        assert split_top_level('x:"a:b":c', ":", maxsplit=1) == ["x", '"a:b":c']
