# WORKFLOW: Chapter-99 adjusted-formula synthesizer for active duty records.
# Used by: Post-promotion enrichment, rate retrieval (reciprocal-only marker)
# Functions:
# 1. infer_countries() - ISO codes from "product(s) of China"-style heading text
# 2. parse_exclusions() - Headings named in "Except as provided in heading(s) X, Y"
# 3. build_heading_index() - Surcharge formula, countries and exclusions per Chapter-99 heading
# 4. synthesize_entry() - Target adjusted formula, country sets and metadata of one row (pure)
# 5. Chapter99Synthesizer.run() - Read-modify-write over active rows, writing only real changes
#
# Synthesis flow: Row links -> Known headings -> Exclusions -> Surcharges -> (base) + (s1) + (s2)
# Headings naming no country apply to every origin; country headings only add to their countries.
# Output contains no timestamps, so rerunning on unchanged rows changes nothing.

"""
Chapter-99 adjusted-formula synthesis.

Chapter 99 holds temporary trade actions layered on top of the base duty. A tariff line
links to the Chapter-99 headings in its footnotes; each heading's rate text yields a
surcharge formula and its description names the countries it applies to. A heading whose
text begins "Except as provided in heading X" switches X off for rows linked to both.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from db.models import HtsEntry
from db.payloads import Chapter99Synthesis, OtherChapter99Detail, describe_variables
from db.repositories import HtsRepository
from etl.formula_compiler import compile_by_pattern, compile_surcharge, extract_variables
from etl.staging_loader import extract_chapter99_links

logger = logging.getLogger(__name__)

DEFAULT_NON_NTR_COUNTRIES = ["BY", "CU", "KP", "RU"]

COUNTRY_ALIASES = {
    "china": "CN",
    "people's republic of china": "CN",
    "peoples republic of china": "CN",
    "prc": "CN",
    "russia": "RU",
    "russian federation": "RU",
    "belarus": "BY",
    "north korea": "KP",
    "democratic people's republic of korea": "KP",
    "democratic peoples republic of korea": "KP",
    "dprk": "KP",
    "cuba": "CU",
}

PRODUCT_OF = re.compile(r'\bproducts?\s+of\s+([^,.;:]+)', re.IGNORECASE)
CHAPTER99_CODE = re.compile(r'99\d{2}\.\d{2}(?:\.\d{2}){0,2}')
EXCLUSION_CLAUSE = re.compile(
    r'^\s*except\s+as\s+provided\s+in\s+(?:sub)?headings?\s+'
    r'((?:99\d{2}\.\d{2}(?:\.\d{2}){0,2})(?:\s*(?:,|and|or|,\s*and|,\s*or)\s*99\d{2}\.\d{2}(?:\.\d{2}){0,2})*)',
    re.IGNORECASE,
)


def infer_countries(text: Optional[str]) -> List[str]:
    """ISO country codes named as "product(s) of ..." in heading text."""
    found: Set[str] = set()
    for match in PRODUCT_OF.finditer(text or ""):
        phrase = match.group(1)
        for token in re.split(r',|\band\b|\bor\b', phrase, flags=re.IGNORECASE):
            normalized = re.sub(r"[^\w\s']", " ", token.lower())
            normalized = re.sub(r'\s+', ' ', normalized).strip()
            normalized = re.sub(r'^the ', '', normalized)
            if normalized in COUNTRY_ALIASES:
                found.add(COUNTRY_ALIASES[normalized])
    return sorted(found)


def parse_exclusions(text: Optional[str]) -> List[str]:
    match = EXCLUSION_CLAUSE.match(text or "")
    if not match:
        return []
    return sorted(set(CHAPTER99_CODE.findall(match.group(1))))


def heading_rate_text(heading: Any) -> str:
    return (heading.general_rate or heading.chapter99_rate or "").strip()


def build_heading_index(headings: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    """
    Describe each Chapter-99 heading.

    Returns:
        {code: {"rate_text", "surcharge", "countries", "excludes"}}
    """
    index = {}
    for heading in headings:
        rate_text = heading_rate_text(heading)
        surcharge = compile_surcharge(rate_text)
        countries = set(infer_countries(heading.description))
        countries.update(code.upper() for code in (heading.chapter99_applicable_countries or []) if code)
        index[heading.code] = {
            "rate_text": rate_text,
            "surcharge": surcharge["formula"] if surcharge and surcharge["formula"] != "0" else None,
            "countries": sorted(countries),
            "excludes": parse_exclusions(heading.description),
        }
    return index


def _base_formula(formula: Optional[str], rate_text: Optional[str], unit: Optional[str]) -> Optional[str]:
    if formula and formula.strip():
        return formula.strip()
    if not rate_text or not rate_text.strip():
        return None
    compiled = compile_by_pattern(rate_text, unit)
    return compiled["formula"] if compiled else None


def _compose(base: str, surcharges: List[str]) -> str:
    return " + ".join([f"({base})"] + [f"({surcharge})" for surcharge in surcharges])


def _merge_variables(existing: Optional[List[Dict[str, Any]]], formula: str) -> List[Dict[str, Any]]:
    merged = []
    seen = set()
    for variable in existing or []:
        name = variable.get("name") if isinstance(variable, dict) else None
        if name and name not in seen:
            seen.add(name)
            merged.append(variable)
    missing = [name for name in extract_variables(formula) if name not in seen]
    return merged + describe_variables(missing)


def synthesize_entry(entry: Any, headings: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """
    Compute the Chapter-99 fields of one duty record.

    Args:
        entry: Duty record (rate texts, formulas, footnotes, chapter99_links, metadata)
        headings: Output of build_heading_index()

    Returns:
        Target values for chapter99_links, non_ntr_applicable_countries,
        chapter99_applicable_countries, adjusted_formula, adjusted_formula_variables,
        is_adjusted_formula_generated, other_chapter99_detail and metadata
    """
    links = sorted(set(entry.chapter99_links or []) | set(extract_chapter99_links(entry.footnotes)))
    non_ntr = sorted({code.upper() for code in (entry.non_ntr_applicable_countries or []) if code}) \
        or list(DEFAULT_NON_NTR_COUNTRIES)
    metadata = dict(entry.metadata_ or {})
    target: Dict[str, Any] = {
        "chapter99_links": links or None,
        "non_ntr_applicable_countries": non_ntr,
    }

    if not links:
        metadata.pop("chapter99Synthesis", None)
        target["metadata_"] = metadata
        if entry.is_adjusted_formula_generated:
            target.update(_cleared())
        return target

    known = [link for link in links if link in headings]
    if not known:
        metadata["chapter99Synthesis"] = Chapter99Synthesis(
            unresolved=True, reason="linked chapter99 heading not found", links=links,
        ).model_dump()
        target["metadata_"] = metadata
        return target

    excluded = set()
    for code in known:
        for prefix in headings[code]["excludes"]:
            excluded.update(link for link in known if link != code and link.startswith(prefix))
    applicable = [code for code in known if code not in excluded and headings[code]["surcharge"]]

    if not applicable:
        metadata["chapter99Synthesis"] = Chapter99Synthesis(
            reciprocalOnly=True, links=links, excludedHeadings=sorted(excluded),
        ).model_dump()
        target.update(_cleared())
        target["metadata_"] = metadata
        return target

    base = _base_formula(entry.rate_formula, entry.general_rate, entry.unit)
    if base is None:
        metadata["chapter99Synthesis"] = Chapter99Synthesis(
            unresolved=True, reason="base general formula unavailable", links=links,
            appliedHeadings=applicable, excludedHeadings=sorted(excluded),
        ).model_dump()
        target["metadata_"] = metadata
        return target

    surcharges = {code: headings[code]["surcharge"] for code in applicable}
    unconditional, per_country = _country_formulas(base, applicable, headings)
    adjusted, countries, country_formulas = _split_default(base, unconditional, per_country, headings)

    target.update({
        "chapter99_applicable_countries": countries,
        "adjusted_formula": adjusted,
        "adjusted_formula_variables": _merge_variables(
            entry.rate_variables, " + ".join([adjusted] + list(country_formulas.values())),
        ),
        "is_adjusted_formula_generated": True,
        "other_chapter99_detail": _other_detail(entry, headings, applicable, non_ntr),
    })
    metadata["chapter99Synthesis"] = Chapter99Synthesis(
        links=links, appliedHeadings=applicable, excludedHeadings=sorted(excluded), surcharges=surcharges,
        unconditionalHeadings=unconditional, countryFormulas=country_formulas,
    ).model_dump()
    target["metadata_"] = metadata
    return target


def _cleared() -> Dict[str, Any]:
    return {
        "adjusted_formula": None,
        "adjusted_formula_variables": None,
        "is_adjusted_formula_generated": False,
        "chapter99_applicable_countries": None,
        "other_chapter99_detail": None,
    }


def _country_formulas(base: str, applicable: List[str], headings: Dict[str, Dict[str, Any]],
                      scope: Optional[Set[str]] = None):
    """
    Split applicable headings into unconditional ones and per-country formulas.

    A heading naming no country applies to every origin. Each country named by a heading
    gets the base plus the unconditional surcharges plus the surcharges of its own headings.

    Returns:
        (unconditional heading codes, {country: formula})
    """
    unconditional = [code for code in applicable if not headings[code]["countries"]]
    countries = sorted({country for code in applicable for country in headings[code]["countries"]})
    if scope is not None:
        countries = [country for country in countries if country in scope]
    formulas = {}
    for country in countries:
        surcharges = [
            headings[code]["surcharge"] for code in applicable
            if not headings[code]["countries"] or country in headings[code]["countries"]
        ]
        formulas[country] = _compose(base, surcharges)
    return unconditional, formulas


def _split_default(base: str, unconditional: List[str], per_country: Dict[str, str],
                   headings: Dict[str, Dict[str, Any]]):
    """
    Default formula, the countries it covers (None for every origin) and the countries
    whose formula differs from it.
    """
    if unconditional:
        default = _compose(base, [headings[code]["surcharge"] for code in unconditional])
        return default, None, per_country
    default = per_country[min(per_country)]
    exceptions = {country: formula for country, formula in per_country.items() if formula != default}
    return default, sorted(per_country), exceptions


def _other_detail(entry: Any, headings: Dict[str, Dict[str, Any]], applicable: List[str],
                  non_ntr: List[str]) -> Optional[Dict[str, Any]]:
    """Column-2 formula plus the unconditional surcharges and those aimed at non-NTR countries."""
    scope = set(non_ntr)
    targeted = [
        code for code in applicable
        if not headings[code]["countries"] or set(headings[code]["countries"]) & scope
    ]
    if not targeted:
        return None
    base = _base_formula(entry.other_rate_formula, entry.other_rate, entry.unit)
    if base is None:
        return None
    unconditional, per_country = _country_formulas(base, targeted, headings, scope)
    formula, countries, country_formulas = _split_default(base, unconditional, per_country, headings)
    return OtherChapter99Detail(
        formula=formula,
        variables=describe_variables(extract_variables(" + ".join([formula] + list(country_formulas.values())))),
        countries=countries if countries is not None else sorted(scope),
        headings=targeted,
        countryFormulas=country_formulas,
    ).model_dump()


class Chapter99Synthesizer:
    """Applies synthesize_entry() to the active duty records."""

    def __init__(self, db: Session, batch_size: int = 500):
        self.db = db
        self.batch_size = batch_size
        self.hts = HtsRepository(db)

    def run(self, version: Optional[str] = None) -> Dict[str, int]:
        """
        Synthesize adjusted formulas for active rows.

        Args:
            version: Restrict to one schedule version

        Returns:
            Counters: processed, linked, updated, unresolved, reciprocal_only
        """
        headings = build_heading_index(self.hts.active_in_chapter("99", version))
        stats = {"processed": 0, "linked": 0, "updated": 0, "unresolved": 0, "reciprocal_only": 0}

        for page in self.hts.iter_active(self.batch_size, version):
            for entry in page:
                if entry.chapter == "99":
                    continue
                stats["processed"] += 1
                target = synthesize_entry(entry, headings)
                synthesis = target["metadata_"].get("chapter99Synthesis")
                if synthesis:
                    stats["linked"] += 1
                    stats["unresolved"] += int(synthesis.get("unresolved", False))
                    stats["reciprocal_only"] += int(synthesis.get("reciprocalOnly", False))
                if self._apply(entry, target):
                    stats["updated"] += 1
            self.db.commit()

        logger.info(
            f"Chapter 99 synthesis: processed={stats['processed']} linked={stats['linked']} "
            f"updated={stats['updated']} unresolved={stats['unresolved']} "
            f"reciprocal_only={stats['reciprocal_only']}"
        )
        return stats

    @staticmethod
    def _apply(entry: HtsEntry, target: Dict[str, Any]) -> bool:
        changed = False
        for field, value in target.items():
            if getattr(entry, field) != value:
                setattr(entry, field, value)
                changed = True
        return changed
