# Generator モジュール
# 記録アクションを pytest-playwright のテストコードに変換

from .code_generator import CodeGenerator, GeneratedStatement, GenerationResult

__all__ = ["CodeGenerator", "GeneratedStatement", "GenerationResult"]
