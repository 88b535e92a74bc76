"""Backtest lifecycle orchestration service.

The package is imported through the ``backend`` namespace, for example
``backend.orchestrator.app.lifecycle``.
"""

from __future__ import annotations

__all__: list[str] = []
