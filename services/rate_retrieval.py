# WORKFLOW: Rate retrieval selecting the formula that applies to a code and origin country.
# Used by: Rates API endpoint, post-promotion smoke check
# Functions:
# 1. desired_formula_type() - OTHER_CHAPTER99 / OTHER / ADJUSTED / GENERAL decision for a row
# 2. manual_lookup_order() - Override fallback order for a desired formula type
# 3. RateRetrievalService.get_rate() - Overrides, stored formulas, pattern and note fallbacks
#
# Retrieval flow: Code -> Active row (ancestor fallback) -> Non-NTR status -> Formula type
#   -> Manual override -> Stored formula -> Compiled general rate -> Note resolver -> LookupError

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from db.models import HtsEntry
from db.payloads import FormulaType, describe_variables
from db.repositories import FormulaOverrideRepository, HtsRepository
from etl.formula_compiler import compile_by_pattern, compile_rate_text, contains_note_reference
from services.chapter99_synthesizer import DEFAULT_NON_NTR_COUNTRIES

logger = logging.getLogger(__name__)

MAX_ANCESTOR_DEPTH = 4


def non_ntr_countries(entry: HtsEntry) -> List[str]:
    source = entry.non_ntr_applicable_countries or DEFAULT_NON_NTR_COUNTRIES
    return [code.upper() for code in source]


def desired_formula_type(entry: HtsEntry, country: str) -> str:
    """
    Pick the formula slot for an origin country.

    Non-NTR countries get the column-2 rate, with Chapter-99 surcharges when the row's
    other_chapter99_detail covers the country. Other countries get the adjusted formula
    when the row has one (not reciprocal-only) and its country set covers the country.
    """
    country = country.upper()
    is_non_ntr = country in non_ntr_countries(entry)
    detail = entry.other_chapter99_detail or {}
    detail_countries = [code.upper() for code in detail.get("countries") or []]

    if is_non_ntr and detail.get("formula") and (not detail_countries or country in detail_countries):
        return FormulaType.OTHER_CHAPTER99.value
    if is_non_ntr:
        return FormulaType.OTHER.value

    synthesis = (entry.metadata_ or {}).get("chapter99Synthesis") or {}
    chapter99_countries = [code.upper() for code in entry.chapter99_applicable_countries or []]
    if (
        not synthesis.get("reciprocalOnly")
        and entry.adjusted_formula
        and (not chapter99_countries or country in chapter99_countries)
    ):
        return FormulaType.ADJUSTED.value
    return FormulaType.GENERAL.value


def manual_lookup_order(desired: str) -> List[str]:
    order = [desired]
    if desired == FormulaType.OTHER_CHAPTER99.value:
        order += [FormulaType.OTHER.value, FormulaType.GENERAL.value]
    elif desired in (FormulaType.ADJUSTED.value, FormulaType.OTHER.value):
        order.append(FormulaType.GENERAL.value)
    return order


def _has_rate_data(entry: HtsEntry) -> bool:
    return bool(entry.rate_formula or entry.general_rate or entry.other_rate_formula or entry.other_rate)


class RateRetrievalService:
    """Resolves the duty formula for (code, country, version)."""

    def __init__(self, db: Session, note_resolver: Any = None):
        self.db = db
        self.hts = HtsRepository(db)
        self.overrides = FormulaOverrideRepository(db)
        self.note_resolver = note_resolver

    def _load_entry(self, code: str, version: Optional[str]) -> Optional[HtsEntry]:
        entry = self.hts.find_active(code, version)
        if entry is None:
            return None
        candidate = entry
        for _ in range(MAX_ANCESTOR_DEPTH):
            if _has_rate_data(candidate) or not candidate.parent_code:
                break
            parent = self.hts.find_active(candidate.parent_code, version or candidate.version)
            if parent is None:
                break
            logger.debug(f"Using ancestor {parent.code} for {code}")
            candidate = parent
        return candidate if _has_rate_data(candidate) else entry

    def get_rate(self, code: str, country: str, version: Optional[str] = None) -> Dict[str, Any]:
        """
        Resolve the formula for a code and country of origin.

        Args:
            code: HTS code (e.g., "0101.21.00.10")
            country: ISO country code of origin
            version: Schedule version; the active row when omitted

        Returns:
            {"code", "version", "formula", "formula_type", "source", "confidence", "variables",
             "override_extra_tax"}

        Raises:
            LookupError: If the code is unknown or no formula can be produced
        """
        entry = self._load_entry(code, version)
        if entry is None:
            raise LookupError(f"HTS code {code} not found")

        country = (country or "ALL").upper()
        resolved_version = version or entry.version
        desired = desired_formula_type(entry, country)
        base = {"code": entry.code, "version": resolved_version, "override_extra_tax": False}

        for formula_type in manual_lookup_order(desired):
            override = self.overrides.find_active(entry.code, country, formula_type, resolved_version)
            if override:
                logger.debug(f"Using manual override for {entry.code} ({formula_type})")
                return {
                    **base,
                    "formula": override.formula,
                    "formula_type": override.formula_type,
                    "source": "manual",
                    "confidence": 1.0,
                    "variables": override.formula_variables,
                    "override_extra_tax": bool(override.override_extra_tax),
                }

        detail = entry.other_chapter99_detail or {}
        if desired == FormulaType.OTHER_CHAPTER99.value:
            formula = (detail.get("countryFormulas") or {}).get(country) or detail["formula"]
            return {**base, "formula": formula, "formula_type": desired, "source": "other",
                    "confidence": 0.95, "variables": detail.get("variables")}
        if desired == FormulaType.OTHER.value and entry.other_rate_formula:
            return {**base, "formula": entry.other_rate_formula, "formula_type": desired, "source": "other",
                    "confidence": 0.9, "variables": entry.other_rate_variables}
        if desired == FormulaType.ADJUSTED.value:
            synthesis = (entry.metadata_ or {}).get("chapter99Synthesis") or {}
            formula = (synthesis.get("countryFormulas") or {}).get(country) or entry.adjusted_formula
            return {**base, "formula": formula, "formula_type": desired, "source": "adjusted",
                    "confidence": 0.95, "variables": entry.adjusted_formula_variables}
        if entry.rate_formula:
            return {**base, "formula": entry.rate_formula, "formula_type": FormulaType.GENERAL.value,
                    "source": "general", "confidence": 0.9, "variables": entry.rate_variables}

        compiled = compile_by_pattern(entry.general_rate, entry.unit) if entry.general_rate else None
        if compiled:
            return {**base, "formula": compiled["formula"], "formula_type": FormulaType.GENERAL.value,
                    "source": "general", "confidence": compiled["confidence"],
                    "variables": describe_variables(compiled["variables"])}

        is_other = desired == FormulaType.OTHER.value
        rate_text = entry.other_rate if is_other else entry.general_rate
        if self.note_resolver is not None and contains_note_reference(rate_text):
            resolved = compile_rate_text(
                rate_text, entry.unit, note_resolver=self.note_resolver, code=entry.code,
                source_column="other" if is_other else "general", year=_version_year(resolved_version),
            )
            if resolved:
                return {**base, "formula": resolved["formula"],
                        "formula_type": FormulaType.OTHER.value if is_other else FormulaType.GENERAL.value,
                        "source": "note", "confidence": resolved["confidence"],
                        "variables": describe_variables(resolved["variables"])}

        raise LookupError(f"No formula available for HTS {entry.code}")


def _version_year(version: Optional[str]) -> Optional[int]:
    match = re.search(r'(19|20)\d{2}', version or "")
    return int(match.group(0)) if match else None
