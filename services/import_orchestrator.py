# WORKFLOW: Import orchestrator - checkpointed state machine over the whole import pipeline.
# Used by: Job queue / CLI (execute), admin API (create, promote, reject, rollback, retry)
# Functions:
# 1. create_import() - Resolve the version (latest when omitted) and create a PENDING run
# 2. execute() - Run DOWNLOADING -> STAGING -> VALIDATING -> DIFFING from the persisted stage
# 3. evaluate_gate() - Promotion gate from fresh issue counts and coverage
# 4. promote() - Explicit promotion: gate or override -> PROCESSING -> activation -> enrichment
# 5. reject() / rollback() / retry_from_staging() - Review and recovery actions
# 6. create_import_orchestrator() - Composition root wiring components from settings
#
# Stage flow: DOWNLOADING -> DOWNLOADED -> STAGING -> VALIDATING -> DIFFING
#   -> STAGED_READY | REQUIRES_REVIEW -> (promote) -> PROCESSING -> COMPLETED
# DIFFING always halts; only promote() moves a run into PROCESSING.

"""
Import orchestrator for USITC HTS schedule versions.

The checkpoint stored on the import run is the only resume state. Every stage is
idempotent, so a redelivered job simply continues from the recorded stage.
"""

import logging
import threading
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import InvalidStageTransitionError, PromotionBlockedError
from db.models import ImportRun
from db.payloads import (
    FormulaValidationSummary, ImportCheckpoint, ImportStage, ImportStatus, ValidationSummary,
)
from db.repositories import (
    HtsRepository, ImportRunRepository, StageDiffRepository, StagedEntryRepository,
    ValidationIssueRepository,
)
from etl.diff_engine import DiffEngine
from etl.fetcher import UsitcFetcher
from etl.promotion import PromotionProcessor
from etl.staging_loader import StagingLoader
from etl.validators import RateValidator, formula_gate_passed
from services.enrichment import PostPromotionEnrichment

logger = logging.getLogger(__name__)
events = structlog.get_logger("hts_import")

# Serializes promotions and rollbacks: both flip is_active across versions of one table.
_ACTIVATION_LOCK = threading.Lock()

HALTED_STATUSES = {
    ImportStatus.STAGED_READY.value,
    ImportStatus.REQUIRES_REVIEW.value,
    ImportStatus.COMPLETED.value,
    ImportStatus.REJECTED.value,
    ImportStatus.ROLLED_BACK.value,
}
PROMOTABLE_STATUSES = {ImportStatus.STAGED_READY.value, ImportStatus.REQUIRES_REVIEW.value}
REJECTABLE_STATUSES = {
    ImportStatus.PENDING.value,
    ImportStatus.STAGED_READY.value,
    ImportStatus.REQUIRES_REVIEW.value,
    ImportStatus.FAILED.value,
}
RETRYABLE_STATUSES = {ImportStatus.FAILED.value, ImportStatus.REQUIRES_REVIEW.value}


class ImportOrchestrator:
    """Drives one import run through the pipeline stages."""

    def __init__(
        self,
        db: Session,
        fetcher: UsitcFetcher,
        note_resolver: Any = None,
        assistant: Any = None,
        embedding_refresher: Optional[Callable[[Session, str], Dict[str, Any]]] = None,
        storage_bucket: str = "hts-raw",
        staging_batch_size: int = 1000,
        promotion_batch_size: int = 500,
        min_coverage: float = 0.995,
        allow_unresolved_notes: bool = False,
        note_formula_policy: str = "STRICT",
        max_ad_valorem_percent: float = 500.0,
        max_specific_duty: float = 1000.0,
        smoke_check_sample_size: int = 25,
        import_log_max_lines: int = 500,
    ):
        self.db = db
        self.fetcher = fetcher
        self.storage_bucket = storage_bucket
        self.min_coverage = min_coverage
        self.allow_unresolved_notes = allow_unresolved_notes
        self.import_log_max_lines = import_log_max_lines

        self.runs = ImportRunRepository(db)
        self.staged = StagedEntryRepository(db)
        self.issues = ValidationIssueRepository(db)
        self.diffs = StageDiffRepository(db)
        self.hts = HtsRepository(db)

        self.loader = StagingLoader(db, staging_batch_size)
        self.validator = RateValidator(
            db,
            note_resolver=note_resolver,
            min_coverage=min_coverage,
            allow_unresolved_notes=allow_unresolved_notes,
            note_formula_policy=note_formula_policy,
            max_ad_valorem_percent=max_ad_valorem_percent,
            max_specific_duty=max_specific_duty,
            batch_size=staging_batch_size,
        )
        self.diff_engine = DiffEngine(db, staging_batch_size)
        self.promoter = PromotionProcessor(db, promotion_batch_size)
        self.enrichment = PostPromotionEnrichment(
            db,
            note_resolver=note_resolver,
            assistant=assistant,
            embedding_refresher=embedding_refresher,
            batch_size=promotion_batch_size,
            smoke_check_sample_size=smoke_check_sample_size,
        )

    # ------------------------------------------------------------------ helpers

    def _log(self, run: ImportRun, message: str, level: str = "info", **fields: Any) -> None:
        """Append a progress line to the run and emit a structured event."""
        checkpoint = ImportCheckpoint.load(run.checkpoint)
        stage = checkpoint.stage.value if checkpoint.stage else None
        line = f"[{datetime.utcnow().isoformat(timespec='seconds')}] {message}"
        run.import_log = (list(run.import_log or []) + [line])[-self.import_log_max_lines:]
        getattr(events, level)(message, import_id=run.id, version=run.source_version, stage=stage, **fields)

    def _save_checkpoint(self, run: ImportRun, checkpoint: ImportCheckpoint) -> None:
        run.checkpoint = checkpoint.dump()
        self.db.commit()

    def _set_metadata(self, run: ImportRun, **values: Any) -> None:
        metadata = dict(run.metadata_ or {})
        metadata.update(values)
        run.metadata_ = metadata

    def _fail(self, import_id: int, error: Exception) -> None:
        self.db.rollback()
        run = self.runs.get(import_id)
        run.status = ImportStatus.FAILED.value
        run.error_message = str(error)
        run.error_stack = traceback.format_exc()
        self._log(run, f"Import failed: {error}", level="error", error_type=type(error).__name__)
        self.db.commit()

    # ------------------------------------------------------------------ lifecycle

    def create_import(self, version: Optional[str] = None, source_url: Optional[str] = None,
                      started_by: str = "system") -> ImportRun:
        """
        Create a PENDING import run.

        Args:
            version: Schedule version ("2025_revision_3"); the latest published when omitted
            source_url: Explicit source URL; derived from the version when omitted
            started_by: Actor recorded on the run
        """
        if version is None:
            latest = self.fetcher.find_latest_version()
            version = latest["version"]
            source_url = source_url or latest["url"]
        source_url = source_url or self.fetcher.url_for_version(version)

        run = self.runs.create(version, source_url, started_by)
        self._log(run, f"Import created for {version} by {started_by}")
        self.db.commit()
        logger.info(f"Created import {run.id} for {version}")
        return run

    def execute(self, import_id: int) -> ImportRun:
        """
        Run the automatic stages from the persisted checkpoint.

        Halted and terminal runs are returned unchanged. A run interrupted during
        PROCESSING resumes its promotion.

        Raises:
            Exception: Any stage failure, after the run is marked FAILED
        """
        run = self.runs.get(import_id)
        if run.status in HALTED_STATUSES:
            logger.info(f"Import {import_id} is {run.status}; nothing to execute")
            return run

        checkpoint = ImportCheckpoint.load(run.checkpoint)
        run.status = ImportStatus.IN_PROGRESS.value
        run.error_message = None
        run.error_stack = None
        if run.import_started_at is None:
            run.import_started_at = datetime.utcnow()
        self._log(run, f"Executing from stage {checkpoint.stage.value if checkpoint.stage else 'START'}")
        self.db.commit()

        try:
            if checkpoint.stage in (None, ImportStage.DOWNLOADING):
                checkpoint = self._download(run, checkpoint)
            if checkpoint.stage in (ImportStage.DOWNLOADED, ImportStage.STAGING):
                checkpoint = self._stage(run, checkpoint)
            if checkpoint.stage == ImportStage.VALIDATING:
                checkpoint = self._validate(run, checkpoint)
            if checkpoint.stage == ImportStage.DIFFING:
                self._diff(run)
            elif checkpoint.stage == ImportStage.PROCESSING:
                self._run_promotion(run)
        except Exception as e:
            self._fail(import_id, e)
            raise

        return run

    def _download(self, run: ImportRun, checkpoint: ImportCheckpoint) -> ImportCheckpoint:
        checkpoint = checkpoint.advance(ImportStage.DOWNLOADING)
        self._save_checkpoint(run, checkpoint)

        key = checkpoint.s3_key or f"usitc/{run.source_version}.json"
        result = self.fetcher.download_to_storage(
            run.source_url, self.storage_bucket, key, expected_hash=checkpoint.file_hash,
        )
        checkpoint = checkpoint.model_copy(update={
            "bucket": self.storage_bucket,
            "s3_key": key,
            "file_hash": result["sha256"],
            "file_size": result["size"],
        }).advance(ImportStage.DOWNLOADED)
        run.source_file_hash = result["sha256"]
        self._log(run, f"Downloaded {result['size']} bytes (sha256 {result['sha256'][:12]})",
                  skipped=result.get("skipped", False))
        self._save_checkpoint(run, checkpoint)
        return checkpoint

    def _stage(self, run: ImportRun, checkpoint: ImportCheckpoint) -> ImportCheckpoint:
        checkpoint = checkpoint.advance(ImportStage.STAGING)
        self._save_checkpoint(run, checkpoint)

        records = self.fetcher.load_records(checkpoint.bucket, checkpoint.s3_key)
        stats = self.loader.stage(run.id, records)

        run = self.runs.get(run.id)
        self._set_metadata(run, staging={
            "sourceRecords": len(records),
            "staged": stats["staged"],
            "inserted": stats["inserted"],
            "updated": stats["updated"],
            "unchanged": stats["unchanged"],
            "removed": stats["removed"],
            "skipped": stats["skipped"],
            "duplicateCodes": stats["duplicate_codes"],
        })
        run.total_entries = stats["staged"]
        checkpoint = checkpoint.model_copy(update={
            "staged_records": stats["staged"],
            "last_chapter": stats["last_chapter"],
        }).advance(ImportStage.VALIDATING)
        self._log(run, f"Staged {stats['staged']} rows ({stats['skipped']} header rows skipped)")
        self._save_checkpoint(run, checkpoint)
        return checkpoint

    def _validate(self, run: ImportRun, checkpoint: ImportCheckpoint) -> ImportCheckpoint:
        result = self.validator.validate(run.id)
        summary = result["validationSummary"]
        run = self.runs.get(run.id)
        checkpoint = checkpoint.advance(ImportStage.DIFFING)
        self._log(
            run,
            f"Validation: {summary['errorCount']} errors, {summary['warningCount']} warnings, "
            f"coverage {summary['formulaCoverage']:.4f}",
            error_count=summary["errorCount"],
            formula_coverage=summary["formulaCoverage"],
        )
        self._save_checkpoint(run, checkpoint)
        return checkpoint

    def _diff(self, run: ImportRun) -> None:
        counts = self.diff_engine.run(run.id)
        run = self.runs.get(run.id)
        self._set_metadata(run, diffSummary=counts)
        gate = self.evaluate_gate(run.id)
        run.status = ImportStatus.STAGED_READY.value if gate["passed"] else ImportStatus.REQUIRES_REVIEW.value
        self._log(
            run,
            f"Diff: {counts['ADDED']} added, {counts['CHANGED']} changed, {counts['REMOVED']} removed; "
            f"status {run.status}",
            **{key.lower(): value for key, value in counts.items()},
        )
        self.db.commit()

    # ------------------------------------------------------------------ promotion gate

    def evaluate_gate(self, import_id: int) -> Dict[str, Any]:
        """
        Compute the promotion gate.

        Error counts come from the issue table and coverage from the stored counts;
        cached summary values that disagree are reported under "divergence".

        Returns:
            {"passed", "errorCount", "formulaCoverage", "minCoverage", "noteUnresolvedCount",
             "allowUnresolvedNotes", "reasons", "divergence"}
        """
        run = self.runs.get(import_id)
        metadata = run.metadata_ or {}
        if "formulaValidationSummary" not in metadata:
            return {
                "passed": False,
                "errorCount": None,
                "formulaCoverage": None,
                "minCoverage": self.min_coverage,
                "noteUnresolvedCount": None,
                "allowUnresolvedNotes": self.allow_unresolved_notes,
                "reasons": ["validation has not run"],
                "divergence": {},
            }

        cached = ValidationSummary.model_validate(metadata.get("validationSummary") or {})
        formula_summary = FormulaValidationSummary.model_validate(metadata["formulaValidationSummary"])

        error_count = self.issues.counts_by_severity(import_id)["ERROR"]
        if formula_summary.totalRateFields:
            coverage = round(formula_summary.formulaResolvableCount / formula_summary.totalRateFields, 6)
        else:
            coverage = 1.0
        note_unresolved = formula_summary.noteUnresolvedCount
        formula_ok = formula_gate_passed(coverage, self.min_coverage, self.allow_unresolved_notes, note_unresolved)

        reasons = []
        if error_count:
            reasons.append(f"{error_count} validation errors")
        if coverage < self.min_coverage:
            reasons.append(f"formula coverage {coverage} below {self.min_coverage}")
        if note_unresolved and not self.allow_unresolved_notes:
            reasons.append(f"{note_unresolved} unresolved note references")

        divergence = {}
        if cached.errorCount != error_count:
            divergence["errorCount"] = {"cached": cached.errorCount, "fresh": error_count}
        if abs(cached.formulaCoverage - coverage) > 1e-9:
            divergence["formulaCoverage"] = {"cached": cached.formulaCoverage, "fresh": coverage}
        if cached.formulaGatePassed != formula_ok:
            divergence["formulaGatePassed"] = {"cached": cached.formulaGatePassed, "fresh": formula_ok}
        if divergence:
            logger.warning(f"Import {import_id}: cached validation summary diverges from fresh values: {divergence}")

        return {
            "passed": error_count == 0 and formula_ok,
            "errorCount": error_count,
            "formulaCoverage": coverage,
            "minCoverage": self.min_coverage,
            "noteUnresolvedCount": note_unresolved,
            "allowUnresolvedNotes": self.allow_unresolved_notes,
            "reasons": reasons,
            "divergence": divergence,
        }

    def promote(self, import_id: int, validation_override: bool = False, actor: str = "system") -> ImportRun:
        """
        Promote a reviewed import into production.

        Raises:
            InvalidStageTransitionError: If the run is not STAGED_READY or REQUIRES_REVIEW
            PromotionBlockedError: If the gate fails and no override is given
        """
        run = self.runs.get(import_id)
        if run.status not in PROMOTABLE_STATUSES:
            raise InvalidStageTransitionError(f"Import {import_id} cannot be promoted from status {run.status}")

        gate = self.evaluate_gate(import_id)
        if not gate["passed"] and not validation_override:
            raise PromotionBlockedError(f"Promotion of import {import_id} blocked: {'; '.join(gate['reasons'])}", gate)

        if validation_override:
            self._set_metadata(run, validationOverride={
                "by": actor,
                "at": datetime.utcnow().isoformat(),
                "gate": gate,
            })
            self._log(run, f"Validation override by {actor}", level="warning", gate_passed=gate["passed"])

        checkpoint = ImportCheckpoint.load(run.checkpoint).advance(ImportStage.PROCESSING)
        run.status = ImportStatus.IN_PROGRESS.value
        self._log(run, f"Promotion started by {actor}")
        self._save_checkpoint(run, checkpoint)

        try:
            self._run_promotion(run)
        except Exception as e:
            self._fail(import_id, e)
            raise
        return self.runs.get(import_id)

    def _run_promotion(self, run: ImportRun) -> None:
        import_id = run.id
        version = run.source_version
        with _ACTIVATION_LOCK:
            totals = self.promoter.promote(import_id, version)
            run = self.runs.get(import_id)
            self._log(
                run,
                f"Promoted {totals['batches']} batches: {totals['inserted']} inserted, {totals['updated']} updated, "
                f"{totals['skipped']} skipped, {totals['failed']} failed",
                **totals,
            )

            previous_versions = self.hts.active_versions()
            deactivated = self.hts.deactivate_other_versions(version)
            # Rows of this version that are not in the import (removed codes, leftovers of
            # earlier runs) stay inactive.
            activation = self.hts.activate_codes(version, self.staged.codes(import_id))
            run.rollback_info = {
                "previousVersions": previous_versions,
                "deactivatedRows": deactivated,
                "activatedRows": activation["activated"],
                "retiredRows": activation["retired"],
            }

            checkpoint = ImportCheckpoint.load(run.checkpoint).advance(ImportStage.COMPLETED)
            run.status = ImportStatus.COMPLETED.value
            run.import_completed_at = datetime.utcnow()
            if run.import_started_at:
                run.duration_seconds = (run.import_completed_at - run.import_started_at).total_seconds()
            self._log(
                run,
                f"Activated {activation['activated']} rows of {version} ({activation['retired']} retired); "
                f"deactivated {deactivated} rows of other versions",
            )
            self._save_checkpoint(run, checkpoint)

        enrichment = self.enrichment.run(version)
        run = self.runs.get(import_id)
        self._set_metadata(run, enrichment=enrichment)
        failed_steps = [step for step, result in enrichment.items() if isinstance(result, dict) and "error" in result]
        if failed_steps:
            self._log(run, f"Enrichment steps failed: {', '.join(failed_steps)}", level="warning")
        else:
            self._log(run, "Enrichment completed")
        self.db.commit()

    # ------------------------------------------------------------------ review and recovery

    def reject(self, import_id: int, reason: str, actor: str = "system") -> ImportRun:
        run = self.runs.get(import_id)
        if run.status not in REJECTABLE_STATUSES:
            raise InvalidStageTransitionError(f"Import {import_id} cannot be rejected from status {run.status}")
        run.status = ImportStatus.REJECTED.value
        self._set_metadata(run, rejection={"by": actor, "reason": reason, "at": datetime.utcnow().isoformat()})
        self._log(run, f"Rejected by {actor}: {reason}", level="warning")
        self.db.commit()
        return run

    def rollback(self, import_id: int, actor: str = "system") -> ImportRun:
        """
        Deactivate a completed version and reactivate the versions it replaced.

        Raises:
            InvalidStageTransitionError: If the run is not COMPLETED
        """
        run = self.runs.get(import_id)
        if run.status != ImportStatus.COMPLETED.value:
            raise InvalidStageTransitionError(f"Import {import_id} cannot be rolled back from status {run.status}")

        previous_versions = (run.rollback_info or {}).get("previousVersions") or []
        with _ACTIVATION_LOCK:
            deactivated = self.hts.set_version_active(run.source_version, False)
            reactivated = sum(self._reactivate(version, import_id) for version in previous_versions)
            run.status = ImportStatus.ROLLED_BACK.value
            info = dict(run.rollback_info or {})
            info.update({"rolledBackBy": actor, "rolledBackAt": datetime.utcnow().isoformat(),
                         "reactivatedRows": reactivated})
            run.rollback_info = info
            self._log(run, f"Rolled back by {actor}: {deactivated} rows deactivated, {reactivated} reactivated",
                      level="warning")
            self.db.commit()
        return run

    def _reactivate(self, version: str, import_id: int) -> int:
        """Restore the code set of the last completed import of ``version``."""
        source = self.runs.latest_completed(version=version, exclude_id=import_id)
        if source is not None and self.staged.count(source.id):
            return self.hts.activate_codes(version, self.staged.codes(source.id))["activated"]
        if version == self.runs.get(import_id).source_version:
            logger.warning(f"No earlier completed import of {version}; its rows stay inactive")
            return 0
        return self.hts.set_version_active(version, True)

    def retry_from_staging(self, import_id: int, actor: str = "system") -> ImportRun:
        """
        Discard staged rows, issues and diffs and restart at STAGING.

        The downloaded file recorded in the checkpoint is reused.
        """
        run = self.runs.get(import_id)
        if run.status not in RETRYABLE_STATUSES:
            raise InvalidStageTransitionError(f"Import {import_id} cannot be retried from status {run.status}")
        checkpoint = ImportCheckpoint.load(run.checkpoint)
        if not checkpoint.s3_key:
            raise InvalidStageTransitionError(f"Import {import_id} has no downloaded source to restage")

        self.issues.delete_for_import(import_id)
        self.diffs.delete_for_import(import_id)
        self.staged.delete_for_import(import_id)

        run.checkpoint = ImportCheckpoint(
            stage=ImportStage.STAGING,
            bucket=checkpoint.bucket,
            s3_key=checkpoint.s3_key,
            file_hash=checkpoint.file_hash,
            file_size=checkpoint.file_size,
        ).dump()
        run.status = ImportStatus.PENDING.value
        run.error_message = None
        run.error_stack = None
        metadata = dict(run.metadata_ or {})
        for key in ("staging", "validationSummary", "formulaValidationSummary", "validationReport", "diffSummary"):
            metadata.pop(key, None)
        run.metadata_ = metadata
        self._log(run, f"Retry from staging requested by {actor}")
        self.db.commit()
        return run

    def summary(self, import_id: int) -> Dict[str, Any]:
        run = self.runs.get(import_id)
        metadata = run.metadata_ or {}
        result = self.loader.stage_summary(import_id)
        result.update({
            "status": run.status,
            "version": run.source_version,
            "checkpoint": run.checkpoint or {},
            "validationSummary": metadata.get("validationSummary"),
            "formulaValidationSummary": metadata.get("formulaValidationSummary"),
            "gate": self.evaluate_gate(import_id),
        })
        return result


def create_import_orchestrator(db: Session, fetcher: Optional[UsitcFetcher] = None) -> ImportOrchestrator:
    """Create an orchestrator wired from settings."""
    from services.formula_assistant import FormulaAssistant
    from services.note_resolver import TableNoteResolver
    from storage import get_storage

    if fetcher is None:
        fetcher = UsitcFetcher(
            get_storage(),
            base_url=settings.usitc_base_url,
            timeout=settings.download_timeout_seconds,
            max_retries=settings.download_max_retries,
            backoff_base=settings.download_backoff_base_seconds,
            revision_probe_limit=settings.revision_probe_limit,
        )
    assistant = FormulaAssistant() if settings.enable_ai_formula_fallback else None

    return ImportOrchestrator(
        db,
        fetcher,
        note_resolver=TableNoteResolver(db),
        assistant=assistant,
        storage_bucket=settings.storage_bucket,
        staging_batch_size=settings.staging_batch_size,
        promotion_batch_size=settings.promotion_batch_size,
        min_coverage=settings.min_formula_coverage,
        allow_unresolved_notes=settings.allow_unresolved_notes,
        note_formula_policy=settings.note_formula_policy,
        max_ad_valorem_percent=settings.max_ad_valorem_percent,
        max_specific_duty=settings.max_specific_duty,
        smoke_check_sample_size=settings.smoke_check_sample_size,
        import_log_max_lines=settings.import_log_max_lines,
    )
