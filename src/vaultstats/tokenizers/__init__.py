from .base import Tokenizer, TokenizerRegistry
from .markdown import MarkdownTokenizer, UnitTokenizer, WhitespaceTokenizer, default_registry

__all__ = [
    "Tokenizer",
    "TokenizerRegistry",
    "MarkdownTokenizer",
    "UnitTokenizer",
    "WhitespaceTokenizer",
    "default_registry",
]
