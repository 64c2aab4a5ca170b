# WORKFLOW: Tests for formula retrieval per code and country of origin.
# Test scenarios:
# 1. Note reference parsing (general notes, chapter notes, row chapter default)
# 2. Manual override beats the stored formula
# 3. Non-NTR origin -> column-2 formula, with Chapter-99 detail when it covers the country
# 4. Adjusted formula only for countries it covers
# 5. Ancestor fallback, note fallback, unknown code

import pytest

from db.models import FormulaOverride, HtsNote
from services.note_resolver import TableNoteResolver, parse_note_reference
from services.rate_retrieval import RateRetrievalService, desired_formula_type, manual_lookup_order

VERSION = "2024_revision_1"


def test_parse_note_reference():
    assert parse_note_reference("See general note 3(a)") == {"chapter": "00", "note_number": "3(a)"}
    assert parse_note_reference("Rate per note 2(B) to chapter 99") == {"chapter": "99", "note_number": "2(b)"}
    assert parse_note_reference("See chapter 4 U.S. note 10") == {"chapter": "04", "note_number": "10"}
    assert parse_note_reference("See note 2(b)", "0401.10.00") == {"chapter": "04", "note_number": "2(b)"}
    assert parse_note_reference("See note 2(b)") is None
    assert parse_note_reference("5%") is None


def test_manual_lookup_order():
    assert manual_lookup_order("OTHER_CHAPTER99") == ["OTHER_CHAPTER99", "OTHER", "GENERAL"]
    assert manual_lookup_order("ADJUSTED") == ["ADJUSTED", "GENERAL"]
    assert manual_lookup_order("GENERAL") == ["GENERAL"]


class TestRateRetrieval:
    def test_override_wins(self, db, make_entry):
        make_entry("0101.21.00", general_rate="3%", rate_formula="value * 0.03")
        db.add(FormulaOverride(code="0101.21.00", country_code="ALL", formula_type="GENERAL", formula="value * 0.02",
                               update_version=VERSION, active=True, override_extra_tax=True))
        db.commit()

        result = RateRetrievalService(db).get_rate("0101.21.00", "DE")

        assert result["formula"] == "value * 0.02"
        assert result["source"] == "manual"
        assert result["override_extra_tax"] is True

    def test_general_formula(self, db, make_entry):
        make_entry("0101.21.00", general_rate="3%", rate_formula="value * 0.03")
        result = RateRetrievalService(db).get_rate("0101.21.00", "de")
        assert result["formula_type"] == "GENERAL"
        assert result["source"] == "general"
        assert result["version"] == VERSION

    def test_non_ntr_country_gets_column_two(self, db, make_entry):
        make_entry("0101.21.00", general_rate="3%", rate_formula="value * 0.03", other_rate="20%",
                   other_rate_formula="value * 0.2")
        result = RateRetrievalService(db).get_rate("0101.21.00", "RU")
        assert result["formula"] == "value * 0.2"
        assert result["formula_type"] == "OTHER"

    def test_non_ntr_country_with_chapter99_detail(self, db, make_entry):
        entry = make_entry("7601.10.60", general_rate="Free", rate_formula="0", other_rate="11%",
                           other_rate_formula="value * 0.11",
                           other_chapter99_detail={"formula": "(value * 0.11) + (value * 0.35)", "countries": ["RU"]})
        assert desired_formula_type(entry, "RU") == "OTHER_CHAPTER99"
        assert desired_formula_type(entry, "CU") == "OTHER"

        result = RateRetrievalService(db).get_rate("7601.10.60", "RU")
        assert result["formula"] == "(value * 0.11) + (value * 0.35)"
        assert result["source"] == "other"

    def test_adjusted_formula_for_covered_country(self, db, make_entry):
        make_entry("8471.30.01", general_rate="Free", rate_formula="0", adjusted_formula="(0) + (value * 0.25)",
                   chapter99_applicable_countries=["CN"],
                   metadata_={"chapter99Synthesis": {"appliedHeadings": ["9903.88.03"]}})
        service = RateRetrievalService(db)

        assert service.get_rate("8471.30.01", "CN")["formula"] == "(0) + (value * 0.25)"
        assert service.get_rate("8471.30.01", "DE")["formula"] == "0"

    def test_reciprocal_only_uses_general(self, db, make_entry):
        entry = make_entry("8471.30.01", general_rate="Free", rate_formula="0", adjusted_formula="(0) + (value * 0.1)",
                           metadata_={"chapter99Synthesis": {"reciprocalOnly": True}})
        assert desired_formula_type(entry, "CN") == "GENERAL"

    def test_ancestor_fallback(self, db, make_entry):
        make_entry("0101.29.00", general_rate="4.5%", rate_formula="value * 0.045")
        make_entry("0101.29.00.10", parent_code="0101.29.00")

        result = RateRetrievalService(db).get_rate("0101.29.00.10", "DE")

        assert result["code"] == "0101.29.00"
        assert result["formula"] == "value * 0.045"

    def test_pattern_fallback_when_formula_missing(self, db, make_entry):
        make_entry("0101.21.00", general_rate="2.5%")
        result = RateRetrievalService(db).get_rate("0101.21.00", "DE")
        assert result["formula"] == "value * 0.025"
        assert result["variables"][0]["name"] == "value"

    def test_note_fallback(self, db, make_entry):
        make_entry("0401.10.00", general_rate="See note 2(b)")
        db.add(HtsNote(chapter="04", note_number="2(b)", formula="weight * 0.1"))
        db.commit()

        result = RateRetrievalService(db, TableNoteResolver(db)).get_rate("0401.10.00", "DE")

        assert result["source"] == "note"
        assert result["formula"] == "weight * 0.1"

    def test_unknown_code_and_missing_formula(self, db, make_entry):
        make_entry("0401.10.00", general_rate="See note 2(b)")
        service = RateRetrievalService(db)
        with pytest.raises(LookupError):
            service.get_rate("9999.99.99", "DE")
        with pytest.raises(LookupError):
            service.get_rate("0401.10.00", "DE")
