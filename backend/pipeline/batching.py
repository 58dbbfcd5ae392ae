"""Batch preparation, retry and commit helpers for the migrating stage.

A batch is prepared (mapped and validated) away from the target store, then
committed in one transaction. Preparation never writes; commit never
validates. That split lets the next batch be prepared while the current one
commits.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, TypeVar

from errors import ConnectionError, MappingError, MigrationError
from mapping import MappingPlan
from records import ExtractedRecord
from validation import (
    RuleCategory,
    Severity,
    ValidationEngine,
    ValidationFinding,
    ValidationOptions,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PreparedBatch:
    """A batch ready to commit.

    Attributes:
        batch_id: Stable id (same across retries and resumes)
        batch_index: Position of the batch in the pipeline run
        source_index: Index of the source system the records came from
        resume_token: Extraction token just past this batch's last record
        rows: (record_key, canonical record) pairs that may be written
        findings: Serialized findings for every record in the batch
        succeeded/warned/failed: Record outcome counts
        rejected: True when the batch failed its error-rate check
        extracted: Records taken from the source up to and including this batch
    """

    batch_id: str
    batch_index: int
    source_index: int
    resume_token: str
    rows: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    findings: list[dict[str, Any]] = field(default_factory=list)
    succeeded: int = 0
    warned: int = 0
    failed: int = 0
    rejected: bool = False
    extracted: int = 0

    @property
    def size(self) -> int:
        return self.succeeded + self.warned + self.failed

    @property
    def error_rate(self) -> float:
        return self.failed / self.size if self.size else 0.0

    def counts(self) -> dict[str, int]:
        return {"succeeded": self.succeeded, "warned": self.warned, "failed": self.failed}


class BatchPreparer:
    """Maps and validates extracted records for one source system."""

    def __init__(
        self,
        plan: MappingPlan,
        validator: ValidationEngine,
        options: ValidationOptions,
        error_rate_threshold: float,
        datasets: dict[str, Any] | None = None,
    ) -> None:
        self.plan = plan
        self.validator = validator
        self.options = options
        self.error_rate_threshold = error_rate_threshold
        self.datasets = datasets or {}

    def prepare(
        self,
        records: list[ExtractedRecord],
        batch_id: str,
        batch_index: int,
        source_index: int,
        resume_token: str,
    ) -> PreparedBatch:
        """Map and validate a batch.

        Records with a blocking ERROR are left out of ``rows`` and counted as
        failed. If the failed share exceeds the error-rate threshold the whole
        batch is rejected: nothing in it is written and every record counts as
        failed.

        Raises:
            MappingError: If records carry source fields the mapping plan has
                never seen and unmapped fields are not allowed
        """
        batch = PreparedBatch(
            batch_id=batch_id,
            batch_index=batch_index,
            source_index=source_index,
            resume_token=resume_token,
        )
        mapped = [self.plan.apply(record) for record in records]

        unplanned = sorted({name for m in mapped for name in m.unplanned_fields})
        if unplanned and not self.plan.allow_unmapped:
            raise MappingError(
                f"{len(unplanned)} source field(s) first seen in {batch_id} have no mapping: "
                f"{', '.join(unplanned)}",
                source_fields=unplanned,
                batch_id=batch_id,
            )

        results = self.validator.validate_batch(
            [m.values for m in mapped],
            self.options,
            self.datasets,
            [m.provenance_key for m in mapped],
        )

        for mapped_record, result in zip(mapped, results):
            for error in mapped_record.transform_errors:
                result.add(
                    ValidationFinding(
                        rule_id="TRANSFORM_FAILED",
                        severity=Severity.WARNING,
                        field=error["target_field"],
                        message=f"{error['source_field']}: {error['message']}",
                        category=RuleCategory.FORMAT,
                        record_index=result.index,
                        provenance=mapped_record.provenance_key,
                    )
                )
            for name in mapped_record.unplanned_fields:
                result.add(
                    ValidationFinding(
                        rule_id="UNMAPPED_FIELD",
                        severity=Severity.INFO,
                        field=name,
                        message=f"{name} has no canonical mapping; kept in additional_fields",
                        category=RuleCategory.STRUCTURAL,
                        record_index=result.index,
                        provenance=mapped_record.provenance_key,
                    )
                )
            batch.findings.extend(
                {**f.to_dict(), "provenance": mapped_record.provenance_key}
                for f in result.findings
            )
            if not result.is_valid:
                batch.failed += 1
                continue
            if result.has_warnings:
                batch.warned += 1
            else:
                batch.succeeded += 1
            record = result.fixed_record if result.fixed_record is not None else mapped_record.values
            batch.rows.append((mapped_record.provenance_key, record))

        if batch.size and batch.error_rate > self.error_rate_threshold:
            self._reject(batch, [m.provenance_key for m in mapped])
        return batch

    def _reject(self, batch: PreparedBatch, provenances: list[str]) -> None:
        logger.warning(
            f"Batch {batch.batch_id} rejected: error rate {batch.error_rate:.0%} "
            f"exceeds {self.error_rate_threshold:.0%}"
        )
        rate = batch.error_rate
        batch.rejected = True
        batch.rows = []
        batch.findings.extend(
            ValidationFinding(
                rule_id="BATCH_ERROR_RATE",
                severity=Severity.ERROR,
                field=None,
                message=(
                    f"Batch rejected: {rate:.0%} of its records failed validation "
                    f"(threshold {self.error_rate_threshold:.0%})"
                ),
                category=RuleCategory.STRUCTURAL,
                provenance=provenance,
            ).to_dict()
            for provenance in provenances
        )
        batch.failed = batch.size
        batch.succeeded = batch.warned = 0


def retry_with_backoff(
    operation: Callable[[], T],
    max_retries: int,
    base_delay: float,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """Run an operation, retrying transient migration errors.

    The delay before retry ``n`` (from 0) is ``base_delay * 2**n``. Errors
    that are not transient, and the last transient error once retries are
    exhausted, propagate unchanged.

    Args:
        operation: Zero-argument callable to run
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        description: Used in log messages
        sleep: Sleep function
        should_stop: Checked before each retry; a True result re-raises the
            last error instead of retrying
    """
    attempt = 0
    while True:
        try:
            return operation()
        except MigrationError as e:
            if not e.transient or attempt >= max_retries:
                if e.transient:
                    logger.error(f"{description} failed after {attempt + 1} attempt(s): {e}")
                raise
            if should_stop is not None and should_stop():
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
            attempt += 1


def run_with_timeout(
    executor: ThreadPoolExecutor,
    operation: Callable[[], T],
    timeout: float,
    description: str = "operation",
) -> T:
    """Run an operation on a worker thread with a deadline.

    Raises:
        ConnectionError: Transient, when the deadline passes first
    """
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        future.cancel()
        raise ConnectionError(
            f"{description} timed out after {timeout:.1f}s", transient=True
        ) from e
