# WORKFLOW: Promotion of staged rows into the production hts table.
# Used by: Import orchestrator (PROCESSING stage)
# Functions:
# 1. production_values() - Production column values of a staged row
# 2. fields_changed() - Compare the promotion field set against an existing (code, version) row
# 3. PromotionProcessor.promote() - Batched upsert, one transaction per batch
# 4. PromotionProcessor._process_rows_individually() - Row-by-row fallback after a failed batch
# 5. PromotionProcessor._save_progress() - Checkpoint + counters, written after the batch commits
#
# Promotion flow: Checkpoint -> Next batch -> Upsert (insert/update/skip) -> Commit -> Checkpoint
# A crash loses only the uncommitted batch; resume starts at processed_batches + 1.

"""
Batched, resumable promotion of staged HTS rows.
"""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from db.models import HtsEntry, StagedEntry
from db.payloads import ImportCheckpoint, describe_variables
from db.repositories import HtsRepository, ImportRunRepository, StagedEntryRepository
from etl.formula_compiler import compile_by_pattern

logger = logging.getLogger(__name__)

PROMOTION_FIELDS = (
    "indent",
    "description",
    "unit",
    "general_rate",
    "special_rate",
    "special_rates",
    "other_rate",
    "chapter99_rate",
    "chapter99_links",
    "footnotes",
    "quota",
    "chapter",
    "heading",
    "subheading",
    "statistical_suffix",
    "parent_code",
    "parent_codes",
    "full_description",
)
UNORDERED_FIELDS = {"chapter99_links"}
MAX_FAILED_DETAIL = 1000


def production_values(entry: StagedEntry) -> Dict[str, Any]:
    """Production column values carried by a staged row."""
    normalized = entry.normalized or {}
    return {
        "indent": entry.indent,
        "description": entry.description,
        "unit": entry.unit,
        "general_rate": entry.general_rate,
        "special_rate": entry.special_rate,
        "special_rates": normalized.get("special_rates"),
        "other_rate": entry.other_rate,
        "chapter99_rate": entry.chapter99_rate,
        "chapter99_links": list(entry.chapter99_links or []),
        "footnotes": normalized.get("footnotes"),
        "quota": normalized.get("quota"),
        "chapter": entry.chapter,
        "heading": entry.heading,
        "subheading": entry.subheading,
        "statistical_suffix": entry.statistical_suffix,
        "parent_code": entry.parent_code,
        "parent_codes": normalized.get("parent_codes") or [],
        "full_description": normalized.get("full_description") or [],
    }


def fields_changed(existing: HtsEntry, values: Dict[str, Any]) -> List[str]:
    changed = []
    for field in PROMOTION_FIELDS:
        old, new = getattr(existing, field), values.get(field)
        if field in UNORDERED_FIELDS:
            old, new = sorted(old or []), sorted(new or [])
        if old != new:
            changed.append(field)
    return changed


def compiled_formulas(values: Dict[str, Any]) -> Dict[str, Any]:
    """Pattern formulas for the general and other rate texts."""
    formulas: Dict[str, Any] = {}
    general = compile_by_pattern(values.get("general_rate"), values.get("unit")) if values.get("general_rate") else None
    if general:
        formulas.update({
            "rate_formula": general["formula"],
            "rate_variables": describe_variables(general["variables"]),
            "is_formula_generated": True,
        })
    other = compile_by_pattern(values.get("other_rate"), values.get("unit")) if values.get("other_rate") else None
    if other:
        formulas.update({
            "other_rate_formula": other["formula"],
            "other_rate_variables": describe_variables(other["variables"]),
            "is_other_formula_generated": True,
        })
    return formulas


class PromotionProcessor:
    """Upserts staged rows of an import into hts under the import's version."""

    def __init__(
        self,
        db: Session,
        batch_size: int = 500,
        on_batch: Optional[Callable[[int, Dict[str, int]], None]] = None,
    ):
        self.db = db
        self.batch_size = batch_size
        self.on_batch = on_batch
        self.runs = ImportRunRepository(db)
        self.staged = StagedEntryRepository(db)
        self.hts = HtsRepository(db)

    def promote(self, import_id: int, version: str) -> Dict[str, int]:
        """
        Promote staged rows, resuming after the last checkpointed batch.

        Args:
            import_id: Import run id
            version: Schedule version written to hts.version

        Returns:
            Counters of this call: inserted, updated, skipped, failed, batches
        """
        run = self.runs.get(import_id)
        checkpoint = ImportCheckpoint.load(run.checkpoint)
        total = self.staged.count(import_id)
        total_batches = math.ceil(total / self.batch_size) if total else 0
        start_batch = checkpoint.processed_batches

        if start_batch:
            logger.info(f"Import {import_id}: resuming promotion at batch {start_batch + 1}/{total_batches}")

        run.total_entries = total
        run.checkpoint = checkpoint.model_copy(update={"total_batches": total_batches}).dump()
        self.db.commit()

        totals = {"inserted": 0, "updated": 0, "skipped": 0, "failed": 0, "batches": 0}
        for batch_index in range(start_batch, total_batches):
            page = self.staged.find_page(import_id, batch_index * self.batch_size, self.batch_size)
            counters = {"inserted": 0, "updated": 0, "skipped": 0, "failed": 0}
            failures: List[Dict[str, Any]] = []

            try:
                for entry in page:
                    counters[self._apply(entry, import_id, version)] += 1
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.warning(
                    f"Import {import_id}: batch {batch_index + 1} failed ({e}); retrying row by row"
                )
                counters, failures = self._process_rows_individually(page, import_id, version, batch_index + 1)

            self._save_progress(import_id, batch_index + 1, len(page), counters, failures)
            for key, value in counters.items():
                totals[key] += value
            totals["batches"] += 1
            if self.on_batch:
                self.on_batch(batch_index + 1, counters)

        logger.info(
            f"Import {import_id}: promoted {totals['batches']} batches "
            f"({totals['inserted']} inserted, {totals['updated']} updated, "
            f"{totals['skipped']} skipped, {totals['failed']} failed)"
        )
        return totals

    def _apply(self, entry: StagedEntry, import_id: int, version: str) -> str:
        values = production_values(entry)
        existing = self.hts.find(entry.code, version)

        if existing is None:
            row = HtsEntry(
                code=entry.code,
                version=version,
                source_version=version,
                import_date=datetime.utcnow(),
                is_active=False,
                metadata_={"importId": import_id, "rowHash": entry.row_hash},
                **values,
                **compiled_formulas(values),
            )
            self.db.add(row)
            self.db.flush()
            return "inserted"

        changed = fields_changed(existing, values)
        if not changed:
            return "skipped"

        for field in changed:
            setattr(existing, field, values[field])
        if {"general_rate", "other_rate", "unit"} & set(changed) and not existing.confirmed:
            existing.rate_formula = None
            existing.other_rate_formula = None
            for field, value in compiled_formulas(values).items():
                setattr(existing, field, value)
        existing.import_date = datetime.utcnow()
        metadata = dict(existing.metadata_ or {})
        metadata.update({"importId": import_id, "rowHash": entry.row_hash})
        existing.metadata_ = metadata
        self.db.flush()
        return "updated"

    def _process_rows_individually(self, page: List[StagedEntry], import_id: int, version: str,
                                   batch_number: int):
        counters = {"inserted": 0, "updated": 0, "skipped": 0, "failed": 0}
        failures = []
        for entry in page:
            code = entry.code
            try:
                outcome = self._apply(entry, import_id, version)
                self.db.commit()
                counters[outcome] += 1
            except Exception as e:
                self.db.rollback()
                counters["failed"] += 1
                failures.append({"code": code, "error": str(e), "batch": batch_number})
                logger.error(f"Import {import_id}: failed to promote {code}: {e}")
        return counters, failures

    def _save_progress(self, import_id: int, processed_batches: int, page_size: int,
                       counters: Dict[str, int], failures: List[Dict[str, Any]]) -> None:
        run = self.runs.get(import_id)
        checkpoint = ImportCheckpoint.load(run.checkpoint)
        run.checkpoint = checkpoint.model_copy(update={
            "processed_batches": processed_batches,
            "processed_records": checkpoint.processed_records + page_size,
        }).dump()
        run.imported_entries = (run.imported_entries or 0) + counters["inserted"]
        run.updated_entries = (run.updated_entries or 0) + counters["updated"]
        run.skipped_entries = (run.skipped_entries or 0) + counters["skipped"]
        run.failed_entries = (run.failed_entries or 0) + counters["failed"]
        if failures:
            detail = list(run.failed_entries_detail or []) + failures
            run.failed_entries_detail = detail[-MAX_FAILED_DETAIL:]
        self.db.commit()
