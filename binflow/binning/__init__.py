"""Bounded multi-criteria binning (size, count and age driven grouping)."""

from binflow.binning.bin import Bin, BinState, ReadyReason
from binflow.binning.engine import BinningEngine, TriggerResult
from binflow.binning.manager import BinManager
from binflow.binning.policy import (
    BinningConfig,
    BinPolicy,
    ValidationResult,
    parse_data_size,
    parse_duration,
    validate_binning_config,
)
from binflow.binning.processor import (
    BinProcessingResult,
    BinProcessor,
    BundleAttributesProcessor,
    CallableBinProcessor,
)
from binflow.binning.ready_queue import ReadyQueue
from binflow.binning.scheduler import BinningScheduler

__all__ = [
    "Bin",
    "BinState",
    "ReadyReason",
    "BinManager",
    "ReadyQueue",
    "BinningEngine",
    "TriggerResult",
    "BinningScheduler",
    "BinningConfig",
    "BinPolicy",
    "ValidationResult",
    "validate_binning_config",
    "parse_data_size",
    "parse_duration",
    "BinProcessor",
    "BinProcessingResult",
    "CallableBinProcessor",
    "BundleAttributesProcessor",
]
