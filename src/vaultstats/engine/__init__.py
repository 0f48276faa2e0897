from .aggregator import AggregationEngine, ScanStats
from .change_detector import ChangeDetector
from .queue import EventQueue
from .reconciler import Reconciler, matches_ignore_pattern

__all__ = [
    "AggregationEngine",
    "ScanStats",
    "ChangeDetector",
    "EventQueue",
    "Reconciler",
    "matches_ignore_pattern",
]
