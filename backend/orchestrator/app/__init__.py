"""Application package for the backtest orchestrator."""

from .logging import setup_logging

setup_logging()

__all__ = ["setup_logging"]
