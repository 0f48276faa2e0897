"""vaultstats: live, incrementally updated statistics for Obsidian-compatible vaults.

Tracks vault-wide totals (files, notes, attachments, links, words, bytes)
and the word count and timestamps of the active note, updating them from
file lifecycle events without rescanning the vault.

Public API:
- StatsConfig
- Metrics
- AggregationEngine
- WordCounter
- TokenizerRegistry
"""

from .config import StatsConfig
from .metrics import Metrics
from .engine.aggregator import AggregationEngine
from .word_counter import WordCounter
from .tokenizers import TokenizerRegistry

__all__ = ["StatsConfig", "Metrics", "AggregationEngine", "WordCounter", "TokenizerRegistry"]
