# WORKFLOW: Best-effort enrichment of a freshly promoted schedule version.
# Used by: Import orchestrator (after activation)
# Functions:
# 1. rebuild_hierarchy() - has_children / is_heading / is_subheading flags
# 2. generate_missing_formulas() - General and other formulas still missing after promotion
# 3. enrich_note_formulas() - Formulas for note-referencing rate text via the note resolver
# 4. synthesize_chapter99() - Adjusted formulas from Chapter-99 links
# 5. apply_carryover_overrides() - Admin overrides carried into the version
# 6. refresh_embeddings() - Delegates to an injected callable, skipped when none is configured
# 7. smoke_check() - Resolve and evaluate formulas for a sample of rows
# 8. run() - All steps in order; a failing step is logged and recorded, never raised
#
# Enrichment flow: Promotion committed -> Steps in order -> {step: counters} on ImportRun metadata

import logging
import re
import traceback
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.exceptions import FormulaSafetyError
from db.payloads import describe_variables
from db.repositories import HtsRepository
from etl.formula_compiler import (
    SAMPLE_INPUTS, compile_rate_text, contains_note_reference, evaluate_formula, validate_formula,
)
from services.carryover_overrides import CarryoverOverrideApplier
from services.chapter99_synthesizer import Chapter99Synthesizer
from services.rate_retrieval import RateRetrievalService

logger = logging.getLogger(__name__)

ENRICHMENT_STEPS = (
    "rebuild_hierarchy",
    "generate_missing_formulas",
    "enrich_note_formulas",
    "synthesize_chapter99",
    "apply_carryover_overrides",
    "refresh_embeddings",
    "smoke_check",
)

# (rate text column, formula column, variables column, generated flag column, resolver column name)
FORMULA_SLOTS = (
    ("general_rate", "rate_formula", "rate_variables", "is_formula_generated", "general"),
    ("other_rate", "other_rate_formula", "other_rate_variables", "is_other_formula_generated", "other"),
)


def _version_year(version: Optional[str]) -> Optional[int]:
    match = re.match(r'^(\d{4})', version or "")
    return int(match.group(1)) if match else None


class PostPromotionEnrichment:
    """Runs the enrichment steps for one schedule version."""

    def __init__(
        self,
        db: Session,
        note_resolver: Any = None,
        assistant: Any = None,
        embedding_refresher: Optional[Callable[[Session, str], Dict[str, Any]]] = None,
        batch_size: int = 500,
        smoke_check_sample_size: int = 25,
    ):
        self.db = db
        self.note_resolver = note_resolver
        self.assistant = assistant
        self.embedding_refresher = embedding_refresher
        self.batch_size = batch_size
        self.smoke_check_sample_size = smoke_check_sample_size
        self.hts = HtsRepository(db)

    def run(self, version: str) -> Dict[str, Any]:
        """
        Run every step for ``version``.

        Returns:
            {step name: counters or {"error", "traceback"}}
        """
        results: Dict[str, Any] = {}
        for step in ENRICHMENT_STEPS:
            try:
                results[step] = getattr(self, step)(version)
            except Exception as e:
                self.db.rollback()
                logger.warning(f"Enrichment step {step} failed for {version}: {e}")
                results[step] = {"error": str(e), "traceback": traceback.format_exc(limit=5)}
        return results

    def rebuild_hierarchy(self, version: str) -> Dict[str, int]:
        parents = set()
        for page in self.hts.iter_active(self.batch_size, version):
            parents.update(entry.parent_code for entry in page if entry.parent_code)
            parents.update(code for entry in page for code in (entry.parent_codes or []))

        updated = 0
        processed = 0
        for page in self.hts.iter_active(self.batch_size, version):
            for entry in page:
                processed += 1
                digits = re.sub(r'\D', '', entry.code)
                target = {
                    "has_children": entry.code in parents or digits in parents,
                    "is_heading": len(digits) == 4,
                    "is_subheading": len(digits) == 6,
                }
                if any(getattr(entry, field) != value for field, value in target.items()):
                    for field, value in target.items():
                        setattr(entry, field, value)
                    updated += 1
            self.db.commit()

        logger.info(f"Hierarchy rebuilt for {version}: {updated}/{processed} rows updated")
        return {"processed": processed, "updated": updated}

    def generate_missing_formulas(self, version: str) -> Dict[str, int]:
        """Compile formulas for rows promotion could not compile by pattern."""
        stats = {"generated": 0, "ai_generated": 0, "failed": 0}
        for page in self.hts.iter_active(self.batch_size, version):
            for entry in page:
                for rate_column, formula_column, variables_column, flag_column, _ in FORMULA_SLOTS:
                    text = getattr(entry, rate_column)
                    if getattr(entry, formula_column) or not (text or "").strip() or contains_note_reference(text):
                        continue
                    result = compile_rate_text(text, entry.unit, assistant=self.assistant)
                    if not result:
                        stats["failed"] += 1
                        continue
                    setattr(entry, formula_column, result["formula"])
                    setattr(entry, variables_column, describe_variables(result["variables"]))
                    setattr(entry, flag_column, True)
                    if result["method"] == "ai":
                        stats["ai_generated"] += 1
                        entry.required_review = True
                    else:
                        stats["generated"] += 1
            self.db.commit()
        logger.info(f"Missing formulas for {version}: {stats}")
        return stats

    def enrich_note_formulas(self, version: str) -> Dict[str, int]:
        if self.note_resolver is None:
            return {"skipped": True}

        stats = {"resolved": 0, "unresolved": 0}
        year = _version_year(version)
        for page in self.hts.iter_active(self.batch_size, version):
            for entry in page:
                for rate_column, formula_column, variables_column, flag_column, column in FORMULA_SLOTS:
                    text = getattr(entry, rate_column)
                    if getattr(entry, formula_column) or not contains_note_reference(text):
                        continue
                    result = compile_rate_text(
                        text, entry.unit, note_resolver=self.note_resolver, code=entry.code,
                        source_column=column, year=year,
                    )
                    if not result:
                        stats["unresolved"] += 1
                        continue
                    setattr(entry, formula_column, result["formula"])
                    setattr(entry, variables_column, describe_variables(result["variables"]))
                    setattr(entry, flag_column, True)
                    metadata = dict(entry.metadata_ or {})
                    note_formulas = dict(metadata.get("noteFormulas") or {})
                    note_formulas[column] = {"text": text, "confidence": result["confidence"]}
                    metadata["noteFormulas"] = note_formulas
                    entry.metadata_ = metadata
                    stats["resolved"] += 1
            self.db.commit()
        logger.info(f"Note formulas for {version}: {stats}")
        return stats

    def synthesize_chapter99(self, version: str) -> Dict[str, int]:
        return Chapter99Synthesizer(self.db, self.batch_size).run(version)

    def apply_carryover_overrides(self, version: str) -> Dict[str, int]:
        return CarryoverOverrideApplier(self.db).apply(version)

    def refresh_embeddings(self, version: str) -> Dict[str, Any]:
        if self.embedding_refresher is None:
            return {"skipped": True}
        return self.embedding_refresher(self.db, version) or {}

    def smoke_check(self, version: str) -> Dict[str, Any]:
        """
        Resolve formulas for an evenly spread sample of rows and evaluate them.

        Failures are reported, never raised.
        """
        rows = [entry for entry in self.hts.list_active(version) if entry.general_rate and entry.chapter != "99"]
        if not rows or self.smoke_check_sample_size <= 0:
            return {"checked": 0, "passed": 0, "failed": 0, "failures": []}

        step = max(1, len(rows) // self.smoke_check_sample_size)
        sample = rows[::step][:self.smoke_check_sample_size]
        retrieval = RateRetrievalService(self.db, self.note_resolver)

        failures: List[Dict[str, Any]] = []
        for entry in sample:
            try:
                rate = retrieval.get_rate(entry.code, "ALL", version)
                is_valid, error = validate_formula(rate["formula"])
                if not is_valid:
                    raise FormulaSafetyError(rate["formula"], error)
                evaluate_formula(rate["formula"], SAMPLE_INPUTS[0])
            except (LookupError, FormulaSafetyError, ZeroDivisionError) as e:
                failures.append({"code": entry.code, "error": str(e)})

        result = {
            "checked": len(sample),
            "passed": len(sample) - len(failures),
            "failed": len(failures),
            "failures": failures[:20],
        }
        if failures:
            logger.warning(f"Smoke check for {version}: {len(failures)}/{len(sample)} lookups failed")
        return result
