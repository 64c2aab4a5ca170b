# WORKFLOW: Rate validator for staged HTS rows (structure, rate format, rate values, formula readiness).
# Used by: Import orchestrator (VALIDATING stage), promotion gate
# Functions:
# 1. validate_code_structure() - Digit length, dot pattern, hierarchy slices, indent, description
# 2. validate_rate_format() - Pattern classification; ambiguous -> INFO, unparseable -> WARNING
# 3. validate_rate_values() - Negative, excessive and reversed-range sanity checks
# 4. check_formula_readiness() - Note resolution (exact only) or rate-text compilation + safety check
# 5. formula_gate_passed() - Coverage >= minimum and note policy satisfied
# 6. generate_validation_report() - Issue counts by code/severity/field (pandas)
# 7. RateValidator.validate() - Full pass over an import, persisting issues and summaries
#
# Validation flow: Staged rows -> Independent checks -> Issues -> Coverage -> Summaries on ImportRun
# Each pass replaces the previous issues of the import.

"""
Validation of staged HTS rows.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy.orm import Session

from db.models import StagedEntry, ValidationIssue
from db.payloads import FormulaValidationSummary, Severity, ValidationSummary
from db.repositories import ImportRunRepository, StagedEntryRepository, ValidationIssueRepository
from etl.formula_compiler import (
    compile_by_pattern, compile_rate_text, compile_surcharge, contains_note_reference, validate_formula,
)
from etl.rate_classifier import (
    classify_rate, extract_percentages, extract_specific_amounts, find_reversed_ranges,
)

logger = logging.getLogger(__name__)

VALID_CODE_LENGTHS = {2, 4, 6, 8, 10}
CODE_FORMAT = re.compile(r'^\d{4}(\.\d{2}){0,3}$')
RATE_FIELDS = ("general_rate", "special_rate", "other_rate", "chapter99_rate")
FORMULA_FIELDS = (("general_rate", "general"), ("other_rate", "other"))


def _issue(issue_code: str, severity: Severity, message: str, field: Optional[str] = None,
           details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "issue_code": issue_code,
        "severity": severity.value,
        "field": field,
        "message": message,
        "details": details or {},
    }


def validate_code_structure(entry: StagedEntry) -> List[Dict[str, Any]]:
    """
    Structural checks on a staged row.

    Args:
        entry: Staged row

    Returns:
        List of issue dicts
    """
    issues = []
    code = entry.code or ""
    digits = re.sub(r'\D', '', code)

    if len(digits) not in VALID_CODE_LENGTHS:
        issues.append(_issue(
            "INVALID_CODE_LENGTH", Severity.ERROR,
            f"Code {code} has {len(digits)} digits", "code", {"digits": len(digits)},
        ))
    if not CODE_FORMAT.match(code):
        issues.append(_issue("INVALID_CODE_FORMAT", Severity.ERROR, f"Code {code} is not dot-grouped", "code"))

    expected = {
        "chapter": digits[:2],
        "heading": digits[:4] if len(digits) >= 4 else None,
        "subheading": digits[:6] if len(digits) >= 6 else None,
    }
    for field, value in expected.items():
        actual = getattr(entry, field)
        if actual != value:
            issues.append(_issue(
                "HIERARCHY_MISMATCH", Severity.ERROR,
                f"{field} {actual} does not match code {code}", field, {"expected": value, "actual": actual},
            ))

    if entry.indent is not None and entry.indent < 0:
        issues.append(_issue("NEGATIVE_INDENT", Severity.ERROR, f"Indent {entry.indent} is negative", "indent"))
    if not (entry.description or "").strip():
        issues.append(_issue("MISSING_DESCRIPTION", Severity.WARNING, "Description is empty", "description"))

    return issues


def validate_rate_format(field: str, rate_text: Optional[str]) -> List[Dict[str, Any]]:
    """Classify rate text; unparseable text is a WARNING and ambiguous text an INFO."""
    classification = classify_rate(rate_text)
    if classification["empty"]:
        return []
    if classification["classification"] is None:
        return [_issue(
            "UNPARSEABLE_RATE", Severity.WARNING, f"Unrecognized rate format: {rate_text}", field,
            {"text": rate_text},
        )]
    if classification["ambiguous"]:
        return [_issue(
            "AMBIGUOUS_RATE", Severity.INFO,
            f"Rate matches several formats ({', '.join(classification['matches'])})", field,
            {"text": rate_text, "matches": classification["matches"]},
        )]
    return []


def validate_rate_values(field: str, rate_text: Optional[str], max_ad_valorem_percent: float = 500.0,
                         max_specific_duty: float = 1000.0) -> List[Dict[str, Any]]:
    """Negative, excessive and reversed-range checks on the numbers in rate text."""
    if not rate_text:
        return []
    issues = []

    for percent in extract_percentages(rate_text):
        if percent < 0:
            issues.append(_issue("NEGATIVE_RATE", Severity.ERROR, f"Negative percentage {percent}%", field,
                                 {"percent": percent}))
        elif percent > max_ad_valorem_percent:
            issues.append(_issue(
                "EXCESSIVE_AD_VALOREM", Severity.ERROR,
                f"Ad valorem rate {percent}% exceeds {max_ad_valorem_percent}%", field, {"percent": percent},
            ))

    for amount in extract_specific_amounts(rate_text):
        if amount < 0:
            issues.append(_issue("NEGATIVE_RATE", Severity.ERROR, f"Negative specific duty {amount}", field,
                                 {"amount": amount}))
        elif amount > max_specific_duty:
            issues.append(_issue(
                "EXCESSIVE_SPECIFIC_DUTY", Severity.WARNING,
                f"Specific duty ${amount} exceeds ${max_specific_duty}", field, {"amount": amount},
            ))

    for low, high in find_reversed_ranges(rate_text):
        issues.append(_issue("REVERSED_RANGE", Severity.ERROR, f"Range {low}%-{high}% is reversed", field,
                             {"low": low, "high": high}))

    return issues


def check_formula_readiness(entry: StagedEntry, field: str, source_column: str, note_resolver: Any = None,
                            allow_unresolved_notes: bool = False,
                            year: Optional[int] = None) -> Tuple[Dict[str, bool], List[Dict[str, Any]]]:
    """
    Check that a rate field can be turned into a safe formula.

    Args:
        entry: Staged row
        field: Staged column name ("general_rate" or "other_rate")
        source_column: Column name passed to the note resolver ("general" or "other")
        note_resolver: Note resolver or None
        allow_unresolved_notes: Downgrade unresolved notes to WARNING
        year: Schedule year

    Returns:
        ({"resolvable", "note", "note_resolved"}, issues)
    """
    text = getattr(entry, field)
    outcome = {"resolvable": False, "note": False, "note_resolved": False}

    if contains_note_reference(text) and entry.chapter != "99":
        outcome["note"] = True
        resolved = None
        if note_resolver is not None:
            resolved = compile_rate_text(text, entry.unit, note_resolver=note_resolver, code=entry.code,
                                         source_column=source_column, year=year)
        if resolved:
            outcome["resolvable"] = True
            outcome["note_resolved"] = True
            return outcome, []
        severity = Severity.WARNING if allow_unresolved_notes else Severity.ERROR
        return outcome, [_issue(
            "NOTE_UNRESOLVED", severity, f"Note reference could not be resolved: {text}", field, {"text": text},
        )]

    if entry.chapter == "99":
        candidate = compile_surcharge(text) or compile_by_pattern(text, entry.unit)
    else:
        candidate = compile_by_pattern(text, entry.unit)

    if candidate is None:
        return outcome, [_issue("FORMULA_UNRESOLVED", Severity.ERROR, f"No formula for rate text: {text}", field,
                                {"text": text})]

    is_valid, error = validate_formula(candidate["formula"])
    if not is_valid:
        return outcome, [_issue(
            "FORMULA_UNSAFE", Severity.ERROR, f"Formula failed safety validation: {error}", field,
            {"text": text, "formula": candidate["formula"]},
        )]

    outcome["resolvable"] = True
    return outcome, []


def formula_gate_passed(coverage: float, min_coverage: float, allow_unresolved_notes: bool,
                        note_unresolved_count: int) -> bool:
    return coverage >= min_coverage and (allow_unresolved_notes or note_unresolved_count == 0)


def generate_validation_report(issues: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Summarize issues for reviewers.

    Args:
        issues: Issue dicts with issue_code, severity and field

    Returns:
        Counts by issue code, severity and field plus the most affected codes
    """
    if not issues:
        return {"totalIssues": 0, "byIssueCode": {}, "bySeverity": {}, "byField": {}, "topCodes": []}

    df = pd.DataFrame(issues)
    df["field"] = df["field"].fillna("record")
    top_codes = df.groupby("code").size().sort_values(ascending=False).head(10)
    return {
        "totalIssues": int(len(df)),
        "byIssueCode": {key: int(value) for key, value in df.groupby("issue_code").size().items()},
        "bySeverity": {key: int(value) for key, value in df.groupby("severity").size().items()},
        "byField": {key: int(value) for key, value in df.groupby("field").size().items()},
        "topCodes": [{"code": code, "issues": int(count)} for code, count in top_codes.items()],
    }


class RateValidator:
    """Runs every check over the staged rows of an import."""

    def __init__(
        self,
        db: Session,
        note_resolver: Any = None,
        min_coverage: float = 0.995,
        allow_unresolved_notes: bool = False,
        note_formula_policy: str = "STRICT",
        max_ad_valorem_percent: float = 500.0,
        max_specific_duty: float = 1000.0,
        batch_size: int = 1000,
    ):
        self.db = db
        self.note_resolver = note_resolver
        self.min_coverage = min_coverage
        self.allow_unresolved_notes = allow_unresolved_notes
        self.note_formula_policy = note_formula_policy
        self.max_ad_valorem_percent = max_ad_valorem_percent
        self.max_specific_duty = max_specific_duty
        self.batch_size = batch_size
        self.runs = ImportRunRepository(db)
        self.staged = StagedEntryRepository(db)
        self.issues = ValidationIssueRepository(db)

    def validate_entry(self, entry: StagedEntry, year: Optional[int] = None) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        """
        Run all checks on one staged row.

        Returns:
            (issues, counters for totalRateFields/resolvable/note counts)
        """
        issues = validate_code_structure(entry)
        counters = {"total": 0, "resolvable": 0, "notes": 0, "notes_resolved": 0}

        for field in RATE_FIELDS:
            text = getattr(entry, field)
            issues.extend(validate_rate_format(field, text))
            issues.extend(validate_rate_values(field, text, self.max_ad_valorem_percent, self.max_specific_duty))

        for field, source_column in FORMULA_FIELDS:
            if not (getattr(entry, field) or "").strip():
                continue
            counters["total"] += 1
            outcome, readiness_issues = check_formula_readiness(
                entry, field, source_column, self.note_resolver, self.allow_unresolved_notes, year,
            )
            issues.extend(readiness_issues)
            counters["resolvable"] += int(outcome["resolvable"])
            counters["notes"] += int(outcome["note"])
            counters["notes_resolved"] += int(outcome["note_resolved"])

        for issue in issues:
            issue["code"] = entry.code
            issue["stage_entry_id"] = entry.id
        return issues, counters

    def validate(self, import_id: int) -> Dict[str, Any]:
        """
        Validate every staged row of an import and persist issues and summaries.

        Returns:
            {"validationSummary", "formulaValidationSummary", "report"}
        """
        run = self.runs.get(import_id)
        year = _version_year(run.source_version)
        self.issues.delete_for_import(import_id)
        self.db.commit()

        totals = {"total": 0, "resolvable": 0, "notes": 0, "notes_resolved": 0}
        all_issues: List[Dict[str, Any]] = []

        for page in self.staged.iter_pages(import_id, self.batch_size):
            page_issues: List[Dict[str, Any]] = []
            for entry in page:
                issues, counters = self.validate_entry(entry, year)
                page_issues.extend(issues)
                for key, value in counters.items():
                    totals[key] += value
            self._persist(import_id, page_issues)
            all_issues.extend(page_issues)

        duplicate_issues = self._duplicate_issues(import_id, (run.metadata_ or {}).get("staging", {}))
        self._persist(import_id, duplicate_issues)
        all_issues.extend(duplicate_issues)

        counts = {"ERROR": 0, "WARNING": 0, "INFO": 0}
        for issue in all_issues:
            counts[issue["severity"]] += 1

        coverage = round(totals["resolvable"] / totals["total"], 6) if totals["total"] else 1.0
        note_unresolved = totals["notes"] - totals["notes_resolved"]
        gate = formula_gate_passed(coverage, self.min_coverage, self.allow_unresolved_notes, note_unresolved)

        validation_summary = ValidationSummary(
            errorCount=counts["ERROR"],
            warningCount=counts["WARNING"],
            infoCount=counts["INFO"],
            formulaCoverage=coverage,
            formulaGatePassed=gate,
        )
        formula_summary = FormulaValidationSummary(
            totalRateFields=totals["total"],
            formulaResolvableCount=totals["resolvable"],
            formulaUnresolvedCount=totals["total"] - totals["resolvable"],
            noteReferenceCount=totals["notes"],
            noteResolvedCount=totals["notes_resolved"],
            noteUnresolvedCount=note_unresolved,
            nonNoteResolvableCount=totals["resolvable"] - totals["notes_resolved"],
            nonNoteUnresolvedCount=(totals["total"] - totals["notes"]) - (totals["resolvable"] - totals["notes_resolved"]),
            minCoverage=self.min_coverage,
            currentCoverage=coverage,
            formulaGatePassed=gate,
            allowUnresolvedNotes=self.allow_unresolved_notes,
            noteFormulaPolicy=self.note_formula_policy,
        )
        report = generate_validation_report(all_issues)

        metadata = dict(run.metadata_ or {})
        metadata["validationSummary"] = validation_summary.model_dump()
        metadata["formulaValidationSummary"] = formula_summary.model_dump()
        metadata["validationReport"] = report
        run.metadata_ = metadata
        self.db.commit()

        logger.info(
            f"Import {import_id}: validation found {counts['ERROR']} errors, {counts['WARNING']} warnings, "
            f"{counts['INFO']} info; coverage {coverage:.4f} (gate {'passed' if gate else 'failed'})"
        )
        return {
            "validationSummary": validation_summary.model_dump(),
            "formulaValidationSummary": formula_summary.model_dump(),
            "report": report,
        }

    def _duplicate_issues(self, import_id: int, staging_metadata: Dict[str, Any]) -> List[Dict[str, Any]]:
        duplicates = staging_metadata.get("duplicateCodes") or []
        if not duplicates:
            return []
        staged = self.staged.find_by_codes(import_id, [item["code"] for item in duplicates])
        issues = []
        for item in duplicates:
            issue = _issue(
                "DUPLICATE_CODE", Severity.WARNING,
                f"Code {item['code']} appears {item['occurrences']} times in the source; first occurrence kept",
                "code", {"occurrences": item["occurrences"]},
            )
            issue["code"] = item["code"]
            issue["stage_entry_id"] = staged[item["code"]].id if item["code"] in staged else None
            issues.append(issue)
        return issues

    def _persist(self, import_id: int, issues: List[Dict[str, Any]]) -> None:
        self.issues.add_all([
            ValidationIssue(
                import_id=import_id,
                stage_entry_id=issue.get("stage_entry_id"),
                code=issue.get("code"),
                issue_code=issue["issue_code"],
                severity=issue["severity"],
                field=issue.get("field"),
                message=issue["message"],
                details=issue.get("details"),
            )
            for issue in issues
        ])
        self.db.commit()


def _version_year(version: Optional[str]) -> Optional[int]:
    match = re.match(r'^(\d{4})', version or "")
    return int(match.group(1)) if match else None
