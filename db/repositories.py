# WORKFLOW: Small per-entity repositories exposing only the queries the pipeline uses.
# Used by: Staging loader, validator, diff engine, promotion, enrichment, orchestrator, API
# Repositories:
# 1. ImportRunRepository - get/create import runs, previous completed run lookup
# 2. StagedEntryRepository - paged reads by import, lookup by codes, clear for retry or stale codes
# 3. ValidationIssueRepository - bulk insert, counts by severity, filtered listing
# 4. StageDiffRepository - bulk insert, counts by diff type, filtered listing
# 5. HtsRepository - active rows by code, (code, version) lookup, activation switches
# 6. ExtraTaxRepository - overlays active on a date
# 7. FormulaOverrideRepository - overrides for a version or carried over
#
# Repositories never commit; the caller owns the transaction boundary.

from datetime import date
from typing import Dict, Iterator, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from core.exceptions import ImportNotFoundError
from db.models import (
    ExtraTax, FormulaOverride, HtsEntry, ImportRun, StageDiff, StagedEntry, ValidationIssue,
)


class ImportRunRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, import_id: int) -> ImportRun:
        run = self.db.get(ImportRun, import_id)
        if run is None:
            raise ImportNotFoundError(import_id)
        return run

    def create(self, source_version: str, source_url: Optional[str], started_by: str = "system") -> ImportRun:
        run = ImportRun(
            source_version=source_version,
            source_url=source_url,
            status="PENDING",
            checkpoint={},
            import_log=[],
            metadata_={},
            started_by=started_by,
        )
        self.db.add(run)
        self.db.flush()
        return run

    def latest_completed(self, version: Optional[str] = None, exclude_id: Optional[int] = None) -> Optional[ImportRun]:
        query = self.db.query(ImportRun).filter(ImportRun.status == "COMPLETED")
        if version is not None:
            query = query.filter(ImportRun.source_version == version)
        if exclude_id is not None:
            query = query.filter(ImportRun.id != exclude_id)
        return query.order_by(ImportRun.import_completed_at.desc(), ImportRun.id.desc()).first()

    def list_recent(self, limit: int = 50) -> List[ImportRun]:
        return self.db.query(ImportRun).order_by(ImportRun.id.desc()).limit(limit).all()


class StagedEntryRepository:
    def __init__(self, db: Session):
        self.db = db

    def find_by_codes(self, import_id: int, codes: Sequence[str]) -> Dict[str, StagedEntry]:
        if not codes:
            return {}
        rows = (
            self.db.query(StagedEntry)
            .filter(StagedEntry.import_id == import_id, StagedEntry.code.in_(list(codes)))
            .all()
        )
        return {row.code: row for row in rows}

    def find_page(self, import_id: int, offset: int, limit: int) -> List[StagedEntry]:
        return (
            self.db.query(StagedEntry)
            .filter(StagedEntry.import_id == import_id)
            .order_by(StagedEntry.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def iter_pages(self, import_id: int, page_size: int) -> Iterator[List[StagedEntry]]:
        offset = 0
        while True:
            page = self.find_page(import_id, offset, page_size)
            if not page:
                return
            yield page
            offset += len(page)

    def count(self, import_id: int) -> int:
        return self.db.query(func.count(StagedEntry.id)).filter(StagedEntry.import_id == import_id).scalar() or 0

    def codes(self, import_id: int) -> set:
        rows = self.db.query(StagedEntry.code).filter(StagedEntry.import_id == import_id).all()
        return {row[0] for row in rows}

    def delete_for_import(self, import_id: int) -> int:
        return (
            self.db.query(StagedEntry)
            .filter(StagedEntry.import_id == import_id)
            .delete(synchronize_session=False)
        )

    def delete_codes(self, import_id: int, codes: Sequence[str], chunk_size: int = 500) -> int:
        codes = list(codes)
        deleted = 0
        for start in range(0, len(codes), chunk_size):
            deleted += (
                self.db.query(StagedEntry)
                .filter(StagedEntry.import_id == import_id, StagedEntry.code.in_(codes[start:start + chunk_size]))
                .delete(synchronize_session=False)
            )
        return deleted


class ValidationIssueRepository:
    def __init__(self, db: Session):
        self.db = db

    def add_all(self, issues: List[ValidationIssue]) -> None:
        if issues:
            self.db.add_all(issues)

    def delete_for_import(self, import_id: int) -> int:
        return (
            self.db.query(ValidationIssue)
            .filter(ValidationIssue.import_id == import_id)
            .delete(synchronize_session=False)
        )

    def counts_by_severity(self, import_id: int) -> Dict[str, int]:
        rows = (
            self.db.query(ValidationIssue.severity, func.count(ValidationIssue.id))
            .filter(ValidationIssue.import_id == import_id)
            .group_by(ValidationIssue.severity)
            .all()
        )
        counts = {"ERROR": 0, "WARNING": 0, "INFO": 0}
        counts.update({severity: count for severity, count in rows})
        return counts

    def list_for_import(self, import_id: int, severity: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[ValidationIssue]:
        query = self.db.query(ValidationIssue).filter(ValidationIssue.import_id == import_id)
        if severity:
            query = query.filter(ValidationIssue.severity == severity)
        return query.order_by(ValidationIssue.id).offset(offset).limit(limit).all()


class StageDiffRepository:
    def __init__(self, db: Session):
        self.db = db

    def add_all(self, diffs: List[StageDiff]) -> None:
        if diffs:
            self.db.add_all(diffs)

    def delete_for_import(self, import_id: int) -> int:
        return (
            self.db.query(StageDiff)
            .filter(StageDiff.import_id == import_id)
            .delete(synchronize_session=False)
        )

    def counts_by_type(self, import_id: int) -> Dict[str, int]:
        rows = (
            self.db.query(StageDiff.diff_type, func.count(StageDiff.id))
            .filter(StageDiff.import_id == import_id)
            .group_by(StageDiff.diff_type)
            .all()
        )
        counts = {"ADDED": 0, "CHANGED": 0, "UNCHANGED": 0, "REMOVED": 0}
        counts.update({diff_type: count for diff_type, count in rows})
        return counts

    def list_for_import(self, import_id: int, diff_type: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[StageDiff]:
        query = self.db.query(StageDiff).filter(StageDiff.import_id == import_id)
        if diff_type:
            query = query.filter(StageDiff.diff_type == diff_type)
        return query.order_by(StageDiff.id).offset(offset).limit(limit).all()


class HtsRepository:
    def __init__(self, db: Session):
        self.db = db

    def find(self, code: str, version: str) -> Optional[HtsEntry]:
        return self.db.query(HtsEntry).filter(HtsEntry.code == code, HtsEntry.version == version).first()

    def find_by_version(self, codes: Sequence[str], version: str) -> Dict[str, HtsEntry]:
        if not codes:
            return {}
        rows = (
            self.db.query(HtsEntry)
            .filter(HtsEntry.version == version, HtsEntry.code.in_(list(codes)))
            .all()
        )
        return {row.code: row for row in rows}

    def find_active(self, code: str, version: Optional[str] = None) -> Optional[HtsEntry]:
        query = self.db.query(HtsEntry).filter(HtsEntry.code == code)
        if version:
            return query.filter(HtsEntry.version == version).first()
        return query.filter(HtsEntry.is_active.is_(True)).order_by(HtsEntry.id.desc()).first()

    def find_active_by_codes(self, codes: Sequence[str]) -> Dict[str, HtsEntry]:
        if not codes:
            return {}
        rows = (
            self.db.query(HtsEntry)
            .filter(HtsEntry.is_active.is_(True), HtsEntry.code.in_(list(codes)))
            .order_by(HtsEntry.id)
            .all()
        )
        return {row.code: row for row in rows}

    def iter_active(self, page_size: int = 1000, version: Optional[str] = None) -> Iterator[List[HtsEntry]]:
        last_id = 0
        while True:
            query = self.db.query(HtsEntry).filter(HtsEntry.is_active.is_(True), HtsEntry.id > last_id)
            if version:
                query = query.filter(HtsEntry.version == version)
            page = query.order_by(HtsEntry.id).limit(page_size).all()
            if not page:
                return
            yield page
            last_id = page[-1].id

    def list_active(self, version: Optional[str] = None) -> List[HtsEntry]:
        query = self.db.query(HtsEntry).filter(HtsEntry.is_active.is_(True))
        if version:
            query = query.filter(HtsEntry.version == version)
        return query.order_by(HtsEntry.id).all()

    def active_versions(self) -> List[str]:
        rows = self.db.query(HtsEntry.version).filter(HtsEntry.is_active.is_(True)).distinct().all()
        return sorted(row[0] for row in rows)

    def deactivate_other_versions(self, version: str) -> int:
        return (
            self.db.query(HtsEntry)
            .filter(HtsEntry.is_active.is_(True), HtsEntry.version != version)
            .update({HtsEntry.is_active: False}, synchronize_session=False)
        )

    def set_version_active(self, version: str, active: bool) -> int:
        return (
            self.db.query(HtsEntry)
            .filter(HtsEntry.version == version)
            .update({HtsEntry.is_active: active}, synchronize_session=False)
        )

    def activate_codes(self, version: str, codes: Sequence[str], chunk_size: int = 500) -> Dict[str, int]:
        """Make exactly ``codes`` the active rows of ``version``; every other row of it is deactivated."""
        self.set_version_active(version, False)
        codes = sorted(set(codes))
        activated = 0
        for start in range(0, len(codes), chunk_size):
            activated += (
                self.db.query(HtsEntry)
                .filter(HtsEntry.version == version, HtsEntry.code.in_(codes[start:start + chunk_size]))
                .update({HtsEntry.is_active: True}, synchronize_session=False)
            )
        total = self.db.query(func.count(HtsEntry.id)).filter(HtsEntry.version == version).scalar() or 0
        return {"activated": activated, "retired": total - activated}

    def active_in_chapter(self, chapter: str, version: Optional[str] = None) -> List[HtsEntry]:
        query = self.db.query(HtsEntry).filter(HtsEntry.is_active.is_(True), HtsEntry.chapter == chapter)
        if version:
            query = query.filter(HtsEntry.version == version)
        return query.order_by(HtsEntry.code).all()



class ExtraTaxRepository:
    def __init__(self, db: Session):
        self.db = db

    def active_on(self, on_date: Optional[date] = None) -> List[ExtraTax]:
        on_date = on_date or date.today()
        return (
            self.db.query(ExtraTax)
            .filter(
                ExtraTax.is_active.is_(True),
                or_(ExtraTax.effective_date.is_(None), ExtraTax.effective_date <= on_date),
                or_(ExtraTax.expiration_date.is_(None), ExtraTax.expiration_date >= on_date),
            )
            .order_by(ExtraTax.id)
            .all()
        )


class FormulaOverrideRepository:
    def __init__(self, db: Session):
        self.db = db

    def for_version_or_carryover(self, version: str) -> List[FormulaOverride]:
        return (
            self.db.query(FormulaOverride)
            .filter(
                FormulaOverride.active.is_(True),
                or_(FormulaOverride.update_version == version, FormulaOverride.carryover.is_(True)),
            )
            .order_by(FormulaOverride.id)
            .all()
        )

    def find_active(self, code: str, country_code: str, formula_type: str, version: Optional[str]) -> Optional[FormulaOverride]:
        """Most recent active override for a code/country/type: same version first, then country before ALL."""
        query = self.db.query(FormulaOverride).filter(
            FormulaOverride.active.is_(True),
            FormulaOverride.code == code,
            FormulaOverride.formula_type == formula_type,
            FormulaOverride.country_code.in_([country_code, "ALL"]),
        )
        if version:
            query = query.filter(
                or_(FormulaOverride.update_version == version, FormulaOverride.carryover.is_(True))
            )
        candidates = query.all()
        if not candidates:
            return None
        candidates.sort(
            key=lambda item: (
                item.update_version == version,
                item.country_code == country_code,
                item.updated_at or item.created_at,
                item.id,
            ),
            reverse=True,
        )
        return candidates[0]
