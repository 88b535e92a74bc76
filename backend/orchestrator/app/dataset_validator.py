"""Compatibility checks between a market data set and a requested backtest window."""
from __future__ import annotations

import asyncio
import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..db.models import MarketDataSet
from .cursor import ensure_utc
from .logging import get_logger


logger = get_logger("orchestrator.dataset_validator")

REMOTE_STORAGE_PREFIXES = ("s3://", "minio://")
INSTRUMENT_SUFFIXES = ("USDT", "USD", "BTC")
CHECKSUM_LENGTH = 16
_CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True)
class ValidationIssue:
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(slots=True)
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": list(self.warnings),
        }


def compute_file_checksum(path: str) -> str:
    """Return the truncated SHA-256 digest of *path*, read in chunks."""

    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()[:CHECKSUM_LENGTH]


class DatasetValidator:
    """Validate dataset integrity and coverage ahead of a run."""

    async def validate(
        self,
        dataset: MarketDataSet,
        start_date: datetime,
        end_date: datetime,
        instruments: Optional[Sequence[str]] = None,
    ) -> ValidationResult:
        result = ValidationResult()

        if dataset.storage_location and dataset.checksum:
            await self._verify_checksum(dataset, result)

        self._validate_date_range(dataset, start_date, end_date, result)

        if instruments:
            coverage, missing = self.instrument_coverage(dataset, instruments)
            if missing:
                result.warnings.append(f"Missing instruments in dataset: {', '.join(missing)}")
            if coverage < 0.5:
                result.warnings.append(
                    f"Low instrument coverage: only {coverage * 100:.1f}% of requested instruments are available"
                )

        score = dataset.integrity_score
        if score < 50:
            result.warnings.append(
                f"Dataset integrity score is very low ({score}%). Results may be unreliable."
            )
        elif score < 80:
            result.warnings.append(f"Dataset integrity score is below optimal ({score}%).")

        return result

    async def _verify_checksum(self, dataset: MarketDataSet, result: ValidationResult) -> None:
        location = dataset.storage_location or ""
        if location.startswith(REMOTE_STORAGE_PREFIXES):
            return
        if not os.access(location, os.R_OK):
            logger.warning("dataset_file_not_accessible", dataset_id=dataset.id, path=location)
            result.warnings.append(f"Dataset file not accessible for verification: {location}")
            return
        try:
            computed = await asyncio.to_thread(compute_file_checksum, location)
        except OSError as exc:
            logger.warning("dataset_checksum_failed", dataset_id=dataset.id, error=str(exc))
            result.warnings.append(f"Checksum verification failed: {exc}")
            return
        if computed != dataset.checksum:
            result.errors.append(
                ValidationIssue(
                    "CHECKSUM_MISMATCH",
                    f"Dataset checksum mismatch: expected {dataset.checksum}, computed {computed}. "
                    "Data may be corrupted.",
                )
            )

    @staticmethod
    def _validate_date_range(
        dataset: MarketDataSet,
        start_date: datetime,
        end_date: datetime,
        result: ValidationResult,
    ) -> None:
        dataset_start = ensure_utc(dataset.start_at)
        dataset_end = ensure_utc(dataset.end_at)
        backtest_start = ensure_utc(start_date)
        backtest_end = ensure_utc(end_date)

        if backtest_start >= backtest_end:
            result.errors.append(
                ValidationIssue("INVALID_DATE_RANGE", "Backtest start date must be before end date")
            )
            return
        if dataset_start >= dataset_end:
            result.errors.append(
                ValidationIssue("INVALID_DATE_RANGE", "Dataset start date must be before end date")
            )
            return

        overlap_start = max(dataset_start, backtest_start)
        overlap_end = min(dataset_end, backtest_end)
        if overlap_start >= overlap_end:
            result.errors.append(
                ValidationIssue(
                    "NO_DATE_OVERLAP",
                    f"No overlap between dataset date range ({dataset_start.isoformat()} to "
                    f"{dataset_end.isoformat()}) and backtest date range ({backtest_start.isoformat()} "
                    f"to {backtest_end.isoformat()})",
                )
            )
            return

        covered = (overlap_end - overlap_start) / (backtest_end - backtest_start) * 100
        if covered < 100:
            result.warnings.append(
                f"Backtest date range only {covered:.1f}% covered by dataset. "
                f"Effective range: {overlap_start.isoformat()} to {overlap_end.isoformat()}"
            )

    @staticmethod
    def instrument_coverage(dataset: MarketDataSet, requested: Sequence[str]) -> tuple[float, List[str]]:
        """Return the covered fraction and the instruments that are missing."""

        universe = {str(item).upper() for item in dataset.instrument_universe or []}
        missing: List[str] = []
        for instrument in requested:
            symbol = instrument.upper()
            if symbol in universe:
                continue
            if any(f"{symbol}{suffix}" in universe for suffix in INSTRUMENT_SUFFIXES):
                continue
            missing.append(instrument)
        if not requested:
            return 1.0, missing
        return (len(requested) - len(missing)) / len(requested), missing


__all__ = [
    "DatasetValidator",
    "ValidationIssue",
    "ValidationResult",
    "compute_file_checksum",
]
