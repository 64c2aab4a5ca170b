# WORKFLOW: Staging loader normalizing USITC records into hts_stage_entries.
# Used by: Import orchestrator (STAGING stage), API summary endpoint
# Functions:
# 1. normalize_record() - Field aliases, code slices, special rates, footnotes, chapter-99 links
# 2. parse_special_rates() - "Free (A+,AU,CL)" -> {"A+": "Free", "AU": "Free", "CL": "Free"}
# 3. extract_chapter99_links() - 99xx.xx.xx references found in footnotes
# 4. compute_row_hash() - SHA-256 of the canonical normalized payload
# 5. find_duplicate_codes() - Codes appearing more than once in the source (pandas)
# 6. StagingLoader.stage() - Clear issues/diffs, upsert rows by (import_id, code), drop stale codes
# 7. StagingLoader.stage_summary() - Staged row count, issues by severity, diffs by type
#
# Staging flow: Raw records -> Normalize -> Hierarchy (indent stack) -> Row hash -> Upsert batches
# Re-staging the same input leaves unchanged rows untouched (same row_hash, same row ids).

"""
Staging loader for HTS source records.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
from sqlalchemy.orm import Session

from db.models import StagedEntry
from db.payloads import NormalizedEntry
from db.repositories import StageDiffRepository, StagedEntryRepository, ValidationIssueRepository

logger = logging.getLogger(__name__)

CHAPTER99_LINK = re.compile(r'\b(99\d{2}\.\d{2}\.\d{2}(?:\.\d{2})?)\b')
SPECIAL_RATE_GROUP = re.compile(r'([^()]+?)\s*\(([^)]+)\)')
MIN_CODE_DIGITS = 4


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = ", ".join(str(item).strip() for item in value if str(item).strip())
    text = str(value).strip()
    return text or None


def _parse_indent(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_special_rates(special_text: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse special program rates.

    Args:
        special_text: Special column text (e.g., "Free (A+,AU,CL) 2.5% (JO)")

    Returns:
        Mapping of program code to rate, {"ALL": text} without a program list, None when empty
    """
    text = _clean_text(special_text)
    if not text:
        return None

    rates: Dict[str, str] = {}
    for match in SPECIAL_RATE_GROUP.finditer(text):
        rate = match.group(1).strip()
        for program in match.group(2).split(","):
            program = program.strip()
            if program:
                rates[program] = rate
    return rates or {"ALL": text}


def normalize_footnotes(raw: Any) -> Optional[str]:
    """Join footnote values with a single space."""
    if not raw:
        return None
    if isinstance(raw, str):
        return raw.strip() or None
    if isinstance(raw, list):
        values = []
        for item in raw:
            if isinstance(item, str):
                values.append(item.strip())
            elif isinstance(item, dict) and isinstance(item.get("value"), str):
                values.append(item["value"].strip())
        values = [value for value in values if value]
        if values:
            return " ".join(values)
    return json.dumps(raw, sort_keys=True)


def extract_chapter99_links(*texts: Optional[str]) -> List[str]:
    """Sorted unique Chapter-99 heading references."""
    links = set()
    for text in texts:
        if text:
            links.update(CHAPTER99_LINK.findall(text))
    return sorted(links)


def code_slices(code: str) -> Dict[str, Optional[str]]:
    digits = re.sub(r'\D', '', code)
    return {
        "chapter": digits[:2],
        "heading": digits[:4] if len(digits) >= 4 else None,
        "subheading": digits[:6] if len(digits) >= 6 else None,
        "statistical_suffix": digits[8:10] if len(digits) == 10 else None,
    }


def normalize_record(raw: Dict[str, Any]) -> Optional[NormalizedEntry]:
    """
    Normalize one USITC record without hierarchy information.

    Args:
        raw: Source record (htsno, indent, description, units, general, special, other, footnotes, ...)

    Returns:
        NormalizedEntry, or None for header rows (missing code or fewer than 4 digits)
    """
    code = _clean_text(raw.get("htsno"))
    if not code:
        return None
    if len(re.sub(r'\D', '', code)) < MIN_CODE_DIGITS:
        return None

    special_rate = _clean_text(raw.get("special"))
    other = raw.get("other")
    if other is None:
        other = raw.get("2")
    footnotes = normalize_footnotes(raw.get("footnotes"))
    unit = raw.get("units") if raw.get("units") is not None else raw.get("unit")
    quota = raw.get("quota_quantity") if raw.get("quota_quantity") is not None else raw.get("quota")

    return NormalizedEntry(
        code=code,
        indent=_parse_indent(raw.get("indent")),
        description=_clean_text(raw.get("description")) or "",
        unit=_clean_text(unit),
        general_rate=_clean_text(raw.get("general")),
        special_rate=special_rate,
        special_rates=parse_special_rates(special_rate),
        other_rate=_clean_text(other),
        chapter99_rate=_clean_text(raw.get("additionalDuties")),
        footnotes=footnotes,
        quota=_clean_text(quota),
        chapter99_links=extract_chapter99_links(footnotes),
        **code_slices(code),
    )


def apply_hierarchy(entries: Iterable[NormalizedEntry]) -> List[NormalizedEntry]:
    """
    Fill parent_code, parent_codes and full_description from indentation.

    The parent is the closest preceding row with a lower indent in the same chapter;
    rows with no such ancestor fall back to their heading.
    """
    result = []
    stack: List[Tuple[int, str, str]] = []
    current_chapter = None

    for entry in entries:
        if entry.chapter != current_chapter:
            stack = []
            current_chapter = entry.chapter

        while stack and stack[-1][0] >= entry.indent:
            stack.pop()

        if stack:
            parent_code = stack[-1][1]
        elif entry.heading and re.sub(r'\D', '', entry.code) != entry.heading:
            parent_code = entry.heading
        else:
            parent_code = None

        result.append(entry.model_copy(update={
            "parent_code": parent_code,
            "parent_codes": [code for _, code, _ in stack],
            "full_description": [description for _, _, description in stack] + [entry.description],
        }))
        stack.append((entry.indent, entry.code, entry.description))

    return result


def compute_row_hash(entry: NormalizedEntry) -> str:
    payload = json.dumps(entry.model_dump(mode="json"), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def find_duplicate_codes(entries: List[NormalizedEntry]) -> List[Dict[str, Any]]:
    """
    Codes that occur more than once in the source.

    Returns:
        [{"code", "occurrences"}] sorted by code
    """
    if not entries:
        return []
    df = pd.DataFrame({"code": [entry.code for entry in entries]})
    counts = df.groupby("code").size()
    duplicates = counts[counts > 1].sort_index()
    return [{"code": code, "occurrences": int(count)} for code, count in duplicates.items()]


class StagingLoader:
    """Upserts normalized source records into hts_stage_entries."""

    def __init__(self, db: Session, batch_size: int = 1000):
        self.db = db
        self.batch_size = batch_size
        self.staged = StagedEntryRepository(db)
        self.issues = ValidationIssueRepository(db)
        self.diffs = StageDiffRepository(db)

    def prepare(self, records: Iterable[Dict[str, Any]]) -> Tuple[List[Tuple[NormalizedEntry, Dict[str, Any]]], int, List[Dict[str, Any]]]:
        """
        Normalize records and resolve the hierarchy.

        Returns:
            (unique [(entry, raw)] in source order, skipped count, duplicate codes)
        """
        normalized: List[NormalizedEntry] = []
        raws: List[Dict[str, Any]] = []
        skipped = 0
        for raw in records:
            entry = normalize_record(raw)
            if entry is None:
                skipped += 1
                continue
            normalized.append(entry)
            raws.append(raw)

        duplicates = find_duplicate_codes(normalized)
        with_hierarchy = apply_hierarchy(normalized)

        # First occurrence of a code wins.
        seen = set()
        unique = []
        for entry, raw in zip(with_hierarchy, raws):
            if entry.code in seen:
                continue
            seen.add(entry.code)
            unique.append((entry, raw))
        return unique, skipped, duplicates

    def stage(self, import_id: int, records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Stage source records for an import.

        Issues and diffs of the import are cleared first. Rows are upserted by
        (import_id, code): an identical row_hash leaves the row untouched. Staged codes
        absent from the new input are deleted.

        Args:
            import_id: Import run id
            records: Flattened USITC records

        Returns:
            Counters: staged, inserted, updated, unchanged, removed, skipped, duplicate_codes, last_chapter
        """
        entries, skipped, duplicates = self.prepare(records)

        self.issues.delete_for_import(import_id)
        self.diffs.delete_for_import(import_id)
        self.db.commit()

        stats: Dict[str, Any] = {
            "staged": len(entries),
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
            "removed": 0,
            "skipped": skipped,
            "duplicate_codes": duplicates,
            "last_chapter": None,
        }

        for start in range(0, len(entries), self.batch_size):
            batch = entries[start:start + self.batch_size]
            existing = self.staged.find_by_codes(import_id, [entry.code for entry, _ in batch])
            for entry, raw in batch:
                self._upsert(import_id, entry, raw, existing.get(entry.code), stats)
            self.db.commit()
            stats["last_chapter"] = batch[-1][0].chapter
            logger.info(f"Import {import_id}: staged batch {start // self.batch_size + 1} ({len(batch)} rows)")

        stale = self.staged.codes(import_id) - {entry.code for entry, _ in entries}
        if stale:
            stats["removed"] = self.staged.delete_codes(import_id, sorted(stale))
            self.db.commit()

        if duplicates:
            logger.warning(f"Import {import_id}: {len(duplicates)} duplicate codes in source")
        logger.info(
            f"Import {import_id}: staged {stats['staged']} rows "
            f"({stats['inserted']} new, {stats['updated']} updated, {stats['unchanged']} unchanged, "
            f"{stats['skipped']} skipped)"
        )
        return stats

    def _upsert(self, import_id: int, entry: NormalizedEntry, raw: Dict[str, Any],
                existing: Optional[StagedEntry], stats: Dict[str, Any]) -> None:
        row_hash = compute_row_hash(entry)
        if existing is not None and existing.row_hash == row_hash:
            stats["unchanged"] += 1
            return

        values = {
            "description": entry.description,
            "unit": entry.unit,
            "general_rate": entry.general_rate,
            "special_rate": entry.special_rate,
            "other_rate": entry.other_rate,
            "chapter99_rate": entry.chapter99_rate,
            "chapter": entry.chapter,
            "heading": entry.heading,
            "subheading": entry.subheading,
            "statistical_suffix": entry.statistical_suffix,
            "parent_code": entry.parent_code,
            "indent": entry.indent,
            "chapter99_links": entry.chapter99_links,
            "normalized": entry.model_dump(mode="json"),
            "raw_item": raw,
            "row_hash": row_hash,
        }

        if existing is None:
            self.db.add(StagedEntry(import_id=import_id, code=entry.code, **values))
            stats["inserted"] += 1
        else:
            for field, value in values.items():
                setattr(existing, field, value)
            stats["updated"] += 1

    def stage_summary(self, import_id: int) -> Dict[str, Any]:
        return {
            "importId": import_id,
            "stagedCount": self.staged.count(import_id),
            "issues": self.issues.counts_by_severity(import_id),
            "diffs": self.diffs.counts_by_type(import_id),
        }
