"""
Swap execution: resilient executor and protocol fee collection.
"""

from mirrorbot.execution.executor import (
    ResilientExecutor,
    backoff_delay_ms,
    calculate_min_output,
    escalate_unit_price,
)
from mirrorbot.execution.fees import FeeCollector

__all__ = [
    "ResilientExecutor",
    "FeeCollector",
    "calculate_min_output",
    "escalate_unit_price",
    "backoff_delay_ms",
]
