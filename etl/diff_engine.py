# WORKFLOW: Diff engine comparing staged rows with the active production set.
# Used by: Import orchestrator (DIFFING stage), API diff listing
# Functions:
# 1. comparable_fields() - Projection of a staged or production row onto the compared fields
# 2. diff_fields() - Field-level before/after for differing values (lists compared as sets)
# 3. match_extra_taxes() - Overlay taxes matching a code (exact, "*", prefix*, chapter)
# 4. DiffEngine.run() - Classify ADDED/CHANGED/UNCHANGED per staged row and REMOVED per active row
#
# Diff flow: Staged page -> Active rows by code -> Classify -> Overlay taxes -> hts_stage_diffs
# Only hts_stage_diffs is written; production rows are read, never modified.

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from db.models import ExtraTax, HtsEntry, StageDiff, StagedEntry
from db.payloads import DiffType
from db.repositories import ExtraTaxRepository, HtsRepository, StageDiffRepository, StagedEntryRepository

logger = logging.getLogger(__name__)

DIFF_FIELDS = (
    "description",
    "unit",
    "indent",
    "general_rate",
    "special_rate",
    "other_rate",
    "chapter99_rate",
    "parent_code",
    "chapter99_links",
)
UNORDERED_FIELDS = {"chapter99_links"}


def comparable_fields(row: Any) -> Dict[str, Any]:
    return {field: getattr(row, field, None) for field in DIFF_FIELDS}


def _normalize(field: str, value: Any) -> Any:
    if field in UNORDERED_FIELDS:
        return sorted(set(value or []))
    if isinstance(value, str):
        return value.strip() or None
    return value


def diff_fields(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Field-level differences.

    Args:
        before: Current production values
        after: Staged values

    Returns:
        {field: {"before", "after"}} for every differing field
    """
    changes = {}
    for field in DIFF_FIELDS:
        old, new = _normalize(field, before.get(field)), _normalize(field, after.get(field))
        if old != new:
            changes[field] = {"before": before.get(field), "after": after.get(field)}
    return changes


def tax_matches(tax: ExtraTax, code: str, chapter: Optional[str]) -> bool:
    pattern = (tax.code_pattern or "").strip()
    if pattern == "*":
        return True
    if pattern:
        if pattern.endswith("*"):
            prefix = re.sub(r'\D', '', pattern[:-1])
            if re.sub(r'\D', '', code).startswith(prefix):
                return True
        elif pattern == code:
            return True
    return bool(tax.chapter and chapter and tax.chapter == chapter)


def match_extra_taxes(taxes: List[ExtraTax], code: str, chapter: Optional[str]) -> List[Dict[str, Any]]:
    return [
        {
            "taxCode": tax.tax_code,
            "taxName": tax.tax_name,
            "countryCode": tax.country_code,
            "rateType": tax.rate_type,
            "ratePercent": tax.rate_percent,
            "formula": tax.formula,
        }
        for tax in taxes
        if tax_matches(tax, code, chapter)
    ]


class DiffEngine:
    """Classifies staged rows against the active duty records."""

    def __init__(self, db: Session, batch_size: int = 1000):
        self.db = db
        self.batch_size = batch_size
        self.staged = StagedEntryRepository(db)
        self.hts = HtsRepository(db)
        self.diffs = StageDiffRepository(db)
        self.extra_taxes = ExtraTaxRepository(db)

    def classify(self, entry: StagedEntry, current: Optional[HtsEntry]) -> Dict[str, Any]:
        """Diff record for one staged row (without overlays)."""
        after = comparable_fields(entry)
        if current is None:
            return {"diff_type": DiffType.ADDED.value, "summary": {"after": after}}
        changes = diff_fields(comparable_fields(current), after)
        if changes:
            return {"diff_type": DiffType.CHANGED.value, "summary": {"changes": changes}}
        return {"diff_type": DiffType.UNCHANGED.value, "summary": {}}

    def run(self, import_id: int) -> Dict[str, int]:
        """
        Regenerate the diff of an import.

        Args:
            import_id: Import run id

        Returns:
            Counts by diff type
        """
        self.diffs.delete_for_import(import_id)
        self.db.commit()

        taxes = self.extra_taxes.active_on()
        counts = {diff_type.value: 0 for diff_type in DiffType}

        for page in self.staged.iter_pages(import_id, self.batch_size):
            current_rows = self.hts.find_active_by_codes([entry.code for entry in page])
            records = []
            for entry in page:
                current = current_rows.get(entry.code)
                result = self.classify(entry, current)
                result["summary"]["extraTaxes"] = match_extra_taxes(taxes, entry.code, entry.chapter)
                records.append(StageDiff(
                    import_id=import_id,
                    stage_entry_id=entry.id,
                    current_id=current.id if current else None,
                    code=entry.code,
                    diff_type=result["diff_type"],
                    summary=result["summary"],
                ))
                counts[result["diff_type"]] += 1
            self.diffs.add_all(records)
            self.db.commit()

        staged_codes = self.staged.codes(import_id)
        for page in self.hts.iter_active(self.batch_size):
            removed = []
            for current in page:
                if current.code in staged_codes:
                    continue
                removed.append(StageDiff(
                    import_id=import_id,
                    current_id=current.id,
                    code=current.code,
                    diff_type=DiffType.REMOVED.value,
                    summary={
                        "before": comparable_fields(current),
                        "version": current.version,
                        "extraTaxes": match_extra_taxes(taxes, current.code, current.chapter),
                    },
                ))
            counts[DiffType.REMOVED.value] += len(removed)
            self.diffs.add_all(removed)
            self.db.commit()

        logger.info(
            f"Import {import_id}: diff {counts['ADDED']} added, {counts['CHANGED']} changed, "
            f"{counts['UNCHANGED']} unchanged, {counts['REMOVED']} removed"
        )
        return counts
