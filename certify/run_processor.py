"""
Run Processing Module

Executes a certificate generation run: iterates the dataset rows in order,
renders the template once per valid row and records one Certificate each.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .config import get_settings
from .database.models import RunStatus, CertificateStatus
from .database.services import RunService, DatasetService, TemplateService, CertificateService
from .dataset_processor import require_columns
from .errors import MalformedInputError
from .substitution import render, row_fields
from .utils import format_run_stats

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    MISSING_NAME = "missing_name"
    MISSING_EMAIL = "missing_email"
    RENDER_FAILED = "render_failed"


@dataclass
class RowOutcome:
    """Result for one dataset row: a certificate id or the reason it was skipped"""
    row_index: int
    certificate_id: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    error: Optional[str] = None

    @property
    def generated(self) -> bool:
        return self.certificate_id is not None


@dataclass
class RunSummary:
    run_id: int
    status: str
    total_rows: int
    outcomes: List[RowOutcome] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def certificates_generated(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.generated)

    @property
    def rows_skipped(self) -> int:
        return sum(
            1 for outcome in self.outcomes
            if outcome.skip_reason in (SkipReason.MISSING_NAME, SkipReason.MISSING_EMAIL)
        )

    @property
    def rows_failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.skip_reason == SkipReason.RENDER_FAILED)

    def to_dict(self) -> dict:
        data = {"run_id": self.run_id, "status": self.status}
        data.update(format_run_stats(
            self.total_rows, self.certificates_generated, self.rows_skipped, self.rows_failed
        ))
        data["processing_time_seconds"] = round(self.processing_time, 2)
        return data


def verification_url_for(row_index: int, base_url: Optional[str] = None) -> str:
    """Deterministic verification URL from the row's ordinal position (1-based)"""
    base = (base_url or get_settings().verification_base_url).rstrip("/")
    return f"{base}/{row_index + 1}"


def process_row(run, template_document: str, row_index: int, row: Dict[str, str]) -> RowOutcome:
    """
    Render and store the certificate for a single row

    Missing name/email skips the row. A rendering failure is logged and
    reported as RENDER_FAILED; storage errors propagate and abort the run.
    """
    name = (row.get(run.name_column) or "").strip()
    email = (row.get(run.email_column) or "").strip()

    if not name:
        return RowOutcome(row_index=row_index, skip_reason=SkipReason.MISSING_NAME)
    if not email:
        return RowOutcome(row_index=row_index, skip_reason=SkipReason.MISSING_EMAIL)

    try:
        rendered_html = render(template_document, row_fields(row, run.name_column))
    except Exception as e:
        logger.error(f"Run {run.id}: failed to render row {row_index}: {e}")
        return RowOutcome(row_index=row_index, skip_reason=SkipReason.RENDER_FAILED, error=str(e))

    certificate = CertificateService.create_certificate(
        owner_group_id=run.owner_group_id,
        template_id=run.template_id,
        dataset_id=run.dataset_id,
        row_index=row_index,
        row=row,
        run_id=run.id,
        subject_name=name,
        rendered_html=rendered_html,
        status=CertificateStatus.COMPLETED,
        verification_url=verification_url_for(row_index),
        email_recipient=email,
    )
    return RowOutcome(row_index=row_index, certificate_id=certificate.id)


def execute_run(run_id: int) -> RunSummary:
    """
    Execute a pending run

    Args:
        run_id: Run to execute

    Returns:
        RunSummary with per-row outcomes and the terminal status

    Raises:
        NotFoundError: If the run does not exist
        InvalidStateError: If the run is not pending
    """
    # Atomic pending -> processing; raises before anything is written
    run = RunService.claim_for_processing(run_id)
    logger.info(f"Starting run {run_id} ({run.total_rows} rows)")
    start_time = time.time()

    summary = RunSummary(run_id=run_id, status=RunStatus.PROCESSING, total_rows=run.total_rows)

    try:
        template = TemplateService.get_template(run.template_id)
        table = DatasetService.get_table(run.dataset_id)
        if table.row_count != run.total_rows:
            logger.warning(
                f"Run {run_id}: dataset {run.dataset_id} has {table.row_count} rows, "
                f"snapshot was {run.total_rows}"
            )

        # Never produce more certificates than the snapshot allows
        for row_index, row in enumerate(table.rows[:run.total_rows]):
            outcome = process_row(run, template.document, row_index, row)
            if outcome.skip_reason in (SkipReason.MISSING_NAME, SkipReason.MISSING_EMAIL):
                logger.debug(f"Run {run_id}: skipped row {row_index} ({outcome.skip_reason.value})")
            summary.outcomes.append(outcome)

        summary.status = RunStatus.COMPLETED if summary.certificates_generated > 0 else RunStatus.ERROR
        RunService.finish_run(run_id, summary.status, summary.certificates_generated)

    except Exception as e:
        logger.error(f"Run {run_id} aborted: {e}")
        RunService.mark_run_error(run_id, certificates_generated=summary.certificates_generated)
        raise

    summary.processing_time = time.time() - start_time
    logger.info(
        f"Run {run_id} finished with status {summary.status}: "
        f"{summary.certificates_generated} generated, {summary.rows_skipped} skipped, "
        f"{summary.rows_failed} failed in {summary.processing_time:.2f}s"
    )
    return summary


def issue_certificate(
    dataset_id: int,
    template_id: int,
    row_index: int,
    name_column: str,
    email_column: str,
    run_id: Optional[int] = None
):
    """
    Render and store a certificate for one dataset row outside of a batch

    Raises:
        NotFoundError: If the dataset or template does not exist
        ColumnNotFoundError: If a named column is absent
        MalformedInputError: If the row does not exist or lacks a name or email
    """
    dataset = DatasetService.get_dataset(dataset_id)
    template = TemplateService.get_template(template_id)
    table = dataset.table()
    require_columns(table, name_column, email_column)

    if not 0 <= row_index < table.row_count:
        raise MalformedInputError(f"Row {row_index} out of range (dataset has {table.row_count} rows)")

    row = table.rows[row_index]
    name = (row.get(name_column) or "").strip()
    email = (row.get(email_column) or "").strip()
    if not name or not email:
        raise MalformedInputError(f"Row {row_index} has no value for '{name_column}' or '{email_column}'")

    return CertificateService.create_certificate(
        owner_group_id=dataset.owner_group_id,
        template_id=template_id,
        dataset_id=dataset_id,
        row_index=row_index,
        row=row,
        run_id=run_id,
        subject_name=name,
        rendered_html=render(template.document, row_fields(row, name_column)),
        status=CertificateStatus.COMPLETED,
        verification_url=verification_url_for(row_index),
        email_recipient=email,
    )
