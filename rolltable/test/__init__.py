"""
rolltable 测试模块

这个包包含了 rolltable 的所有测试用例：
- test_lexer.py / test_parser.py: 指令扫描与解析
- test_dice.py / test_selection.py: 掷骰与抽取
- test_models.py / test_validation.py: 文档模型与加载校验
- test_resolver.py / test_context.py: 表解析与求值上下文
- test_evaluator.py / test_conditionals.py: 模式求值
- test_engine.py / test_export.py: 公开入口与导出
- test_config.py: 引擎配置与日志
"""
