# WORKFLOW: Re-applies admin formula overrides to the rows of a newly promoted version.
# Used by: Post-promotion enrichment
# Functions:
# 1. deduplicate_overrides() - Keep the most recently updated override per (code, country, type)
# 2. CarryoverOverrideApplier.apply() - Write each override into its formula slot
#
# Apply flow: Overrides (version match or carryover) -> Dedupe -> Active row -> Slot checks -> Write
# GENERAL/OTHER slots are country-agnostic; ADJUSTED/OTHER_CHAPTER99 accumulate countries.

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from db.models import FormulaOverride, HtsEntry
from db.payloads import FormulaType, OtherChapter99Detail, describe_variables
from db.repositories import FormulaOverrideRepository, HtsRepository
from etl.formula_compiler import extract_variables, validate_formula

logger = logging.getLogger(__name__)

# formula type -> (rate text column, formula column, variables column, generated flag column)
SLOTS = {
    FormulaType.GENERAL.value: ("general_rate", "rate_formula", "rate_variables", "is_formula_generated"),
    FormulaType.OTHER.value: ("other_rate", "other_rate_formula", "other_rate_variables", "is_other_formula_generated"),
    FormulaType.ADJUSTED.value: (
        "general_rate", "adjusted_formula", "adjusted_formula_variables", "is_adjusted_formula_generated",
    ),
    FormulaType.OTHER_CHAPTER99.value: ("other_rate", None, None, None),
}
COUNTRY_AGNOSTIC = {FormulaType.GENERAL.value, FormulaType.OTHER.value}


def deduplicate_overrides(overrides: List[FormulaOverride]) -> List[FormulaOverride]:
    """One override per (code, country, formula type); the latest updated_at wins."""
    latest: Dict[tuple, FormulaOverride] = {}
    for override in overrides:
        key = (override.code, (override.country_code or "ALL").upper(), override.formula_type)
        current = latest.get(key)
        if current is None or _recency(override) > _recency(current):
            latest[key] = override
    return sorted(latest.values(), key=lambda item: (item.code, item.formula_type, item.country_code, item.id))


def _recency(override: FormulaOverride):
    return (override.updated_at or override.created_at, override.id)


def _variables(override: FormulaOverride) -> List[Dict[str, Any]]:
    if override.formula_variables:
        return override.formula_variables
    return describe_variables(extract_variables(override.formula))


class CarryoverOverrideApplier:
    """Writes manual formula overrides into the rows of a version."""

    def __init__(self, db: Session):
        self.db = db
        self.hts = HtsRepository(db)
        self.overrides = FormulaOverrideRepository(db)

    def apply(self, version: str) -> Dict[str, int]:
        """
        Apply overrides for ``version`` and all carryover overrides.

        Returns:
            Counters: loaded, duplicates, applied, unchanged and skipped_* reasons
        """
        loaded = self.overrides.for_version_or_carryover(version)
        overrides = deduplicate_overrides(loaded)
        stats = {
            "loaded": len(loaded),
            "duplicates": len(loaded) - len(overrides),
            "applied": 0,
            "unchanged": 0,
            "skipped_missing_row": 0,
            "skipped_empty_rate": 0,
            "skipped_country_scoped": 0,
            "skipped_invalid": 0,
        }

        for override in overrides:
            outcome = self._apply_one(override, version)
            stats[outcome] += 1
        self.db.commit()

        logger.info(
            f"Carryover overrides for {version}: {stats['applied']} applied, {stats['unchanged']} unchanged, "
            f"{sum(value for key, value in stats.items() if key.startswith('skipped'))} skipped"
        )
        return stats

    def _apply_one(self, override: FormulaOverride, version: str) -> str:
        formula_type = (override.formula_type or "").upper()
        country = (override.country_code or "ALL").upper()

        if formula_type not in SLOTS:
            logger.warning(f"Override {override.id} has unknown formula type {override.formula_type}")
            return "skipped_invalid"
        if formula_type in COUNTRY_AGNOSTIC and country != "ALL":
            logger.warning(f"Override {override.id}: {formula_type} overrides cannot be country specific ({country})")
            return "skipped_country_scoped"

        is_valid, error = validate_formula(override.formula)
        if not is_valid:
            logger.warning(f"Override {override.id} for {override.code} rejected: {error}")
            return "skipped_invalid"

        row = self.hts.find(override.code, version)
        if row is None or not row.is_active:
            return "skipped_missing_row"

        rate_column = SLOTS[formula_type][0]
        if not (getattr(row, rate_column) or "").strip():
            return "skipped_empty_rate"

        if formula_type == FormulaType.OTHER_CHAPTER99.value:
            changed = self._apply_other_chapter99(row, override, country)
        else:
            changed = self._apply_slot(row, override, formula_type, country)
        return "applied" if changed else "unchanged"

    def _apply_slot(self, row: HtsEntry, override: FormulaOverride, formula_type: str, country: str) -> bool:
        _, formula_column, variables_column, generated_column = SLOTS[formula_type]
        target = {
            formula_column: override.formula,
            variables_column: _variables(override),
            generated_column: False,
        }
        # An adjusted formula with no country set already covers every origin.
        covers_all = row.adjusted_formula and not row.chapter99_applicable_countries
        if formula_type == FormulaType.ADJUSTED.value and country != "ALL" and not covers_all:
            countries = set(row.chapter99_applicable_countries or [])
            countries.add(country)
            target["chapter99_applicable_countries"] = sorted(countries)
        return self._write(row, target)

    def _apply_other_chapter99(self, row: HtsEntry, override: FormulaOverride, country: str) -> bool:
        detail = OtherChapter99Detail.model_validate(row.other_chapter99_detail or {})
        countries = set(detail.countries)
        if country != "ALL":
            countries.add(country)
        country_formulas = {} if country == "ALL" else {
            code: formula for code, formula in detail.countryFormulas.items() if code != country
        }
        updated = detail.model_copy(update={
            "formula": override.formula,
            "variables": _variables(override),
            "countries": sorted(countries),
            "countryFormulas": country_formulas,
        })
        return self._write(row, {"other_chapter99_detail": updated.model_dump()})

    @staticmethod
    def _write(row: HtsEntry, target: Dict[str, Optional[Any]]) -> bool:
        changed = False
        for field, value in target.items():
            if getattr(row, field) != value:
                setattr(row, field, value)
                changed = True
        return changed
