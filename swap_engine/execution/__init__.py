"""
Order execution: the per-attempt order state machine.
"""

from swap_engine.execution.pipeline import ExecutionPipeline

__all__ = ["ExecutionPipeline"]
