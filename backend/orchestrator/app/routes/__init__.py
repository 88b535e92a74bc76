"""Router modules exposed by the orchestrator API."""
from . import backtests, comparisons, orchestration

__all__ = ["backtests", "comparisons", "orchestration"]
