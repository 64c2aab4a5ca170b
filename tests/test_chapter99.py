# WORKFLOW: Tests for Chapter-99 adjusted-formula synthesis.
# Test scenarios:
# 1. Country inference and exclusion clause parsing
# 2. Adjusted formula = (base) + (surcharge) with heading countries
# 3. "Except as provided in heading X" removes X
# 4. Only non-surcharge headings -> reciprocal-only, formulas cleared
# 5. Unknown heading and missing base formula -> unresolved
# 6. Second run changes nothing
# 7. Headings naming no country reach every origin; country headings only their own countries

from db.models import HtsEntry
from services.chapter99_synthesizer import (
    Chapter99Synthesizer, build_heading_index, infer_countries, parse_exclusions, synthesize_entry,
)
from services.rate_retrieval import RateRetrievalService

VERSION = "2025_revision_1"


def test_infer_countries():
    assert infer_countries("Articles the product of China, as provided for in U.S. note 20") == ["CN"]
    assert infer_countries("Products of the Russian Federation or Belarus") == ["BY", "RU"]
    assert infer_countries("Articles of any origin") == []


def test_parse_exclusions():
    text = "Except as provided in headings 9903.88.03 and 9903.88.15, articles the product of China"
    assert parse_exclusions(text) == ["9903.88.03", "9903.88.15"]
    assert parse_exclusions("Articles of China, except as provided in heading 9903.88.03") == []


def seed_headings(make_entry):
    make_entry("9903.88.03", version=VERSION, description="Articles the product of China, as provided for in U.S. note 20",
               general_rate="The duty provided in the applicable subheading + 25%")
    make_entry("9903.88.15", version=VERSION, description="Articles the product of China, as provided for in U.S. note 20",
               general_rate="The duty provided in the applicable subheading + 7.5%")
    make_entry("9903.01.25", version=VERSION,
               description="Except as provided in heading 9903.88.03, articles the product of China",
               general_rate="The duty provided in the applicable subheading + 10%")
    make_entry("9903.01.01", version=VERSION, description="Articles of any country, reciprocal exemption",
               general_rate="The duty provided in the applicable subheading")


class TestSynthesis:
    def test_single_surcharge(self, db, make_entry):
        seed_headings(make_entry)
        entry = make_entry("8471.30.01", version=VERSION, general_rate="Free", rate_formula="0",
                           other_rate="35%", chapter99_links=["9903.88.15"])

        stats = Chapter99Synthesizer(db).run(VERSION)

        db.refresh(entry)
        assert stats["updated"] == 1
        assert entry.adjusted_formula == "(0) + (value * 0.075)"
        assert entry.is_adjusted_formula_generated is True
        assert entry.chapter99_applicable_countries == ["CN"]
        assert entry.non_ntr_applicable_countries == ["BY", "CU", "KP", "RU"]
        assert entry.other_chapter99_detail is None
        assert entry.metadata_["chapter99Synthesis"]["appliedHeadings"] == ["9903.88.15"]

    def test_exclusion_drops_excluded_heading(self, db, make_entry):
        seed_headings(make_entry)
        entry = make_entry("8471.30.01", version=VERSION, general_rate="2.6%",
                           footnotes="See 9903.88.03 and 9903.01.25.")

        Chapter99Synthesizer(db).run(VERSION)

        db.refresh(entry)
        assert entry.chapter99_links == ["9903.01.25", "9903.88.03"]
        assert entry.adjusted_formula == "(value * 0.026) + (value * 0.1)"
        synthesis = entry.metadata_["chapter99Synthesis"]
        assert synthesis["excludedHeadings"] == ["9903.88.03"]
        assert synthesis["appliedHeadings"] == ["9903.01.25"]

    def test_reciprocal_only_clears_adjusted_fields(self, db, make_entry):
        seed_headings(make_entry)
        entry = make_entry("8471.30.01", version=VERSION, general_rate="Free", chapter99_links=["9903.01.01"],
                           adjusted_formula="(0) + (value * 0.25)", is_adjusted_formula_generated=True,
                           chapter99_applicable_countries=["CN"])

        stats = Chapter99Synthesizer(db).run(VERSION)

        db.refresh(entry)
        assert stats["reciprocal_only"] == 1
        assert entry.adjusted_formula is None
        assert entry.chapter99_applicable_countries is None
        assert entry.metadata_["chapter99Synthesis"]["reciprocalOnly"] is True

    def test_unknown_heading_is_unresolved(self, db, make_entry):
        seed_headings(make_entry)
        entry = make_entry("8471.30.01", version=VERSION, general_rate="Free", chapter99_links=["9903.99.99"])

        stats = Chapter99Synthesizer(db).run(VERSION)

        db.refresh(entry)
        assert stats["unresolved"] == 1
        assert entry.adjusted_formula is None
        assert entry.metadata_["chapter99Synthesis"]["reason"] == "linked chapter99 heading not found"

    def test_missing_base_formula_is_unresolved(self):
        headings = {"9903.88.15": {"rate_text": "+7.5%", "surcharge": "value * 0.075", "countries": ["CN"],
                                   "excludes": []}}
        entry = HtsEntry(code="8471.30.01", general_rate="The rate applicable in chapter 84",
                         chapter99_links=["9903.88.15"], metadata_={})
        target = synthesize_entry(entry, headings)
        assert target["metadata_"]["chapter99Synthesis"]["unresolved"] is True
        assert "adjusted_formula" not in target

    def test_non_ntr_heading_builds_other_detail(self):
        headings = build_heading_index([
            HtsEntry(code="9903.90.01", description="Products of the Russian Federation",
                     general_rate="The duty provided in the applicable subheading + 35%"),
        ])
        entry = HtsEntry(code="7601.10.60", general_rate="Free", other_rate="11%", chapter99_links=["9903.90.01"],
                         metadata_={})
        target = synthesize_entry(entry, headings)
        assert target["other_chapter99_detail"]["formula"] == "(value * 0.11) + (value * 0.35)"
        assert target["other_chapter99_detail"]["countries"] == ["RU"]

    def test_second_run_is_idempotent(self, db, make_entry):
        seed_headings(make_entry)
        make_entry("8471.30.01", version=VERSION, general_rate="Free", chapter99_links=["9903.88.15"])
        make_entry("0101.21.00", version=VERSION, general_rate="Free")
        synthesizer = Chapter99Synthesizer(db)

        synthesizer.run(VERSION)
        second = synthesizer.run(VERSION)

        assert second["updated"] == 0
        assert second["processed"] == 2


class TestCountryConditionedSurcharges:
    def test_unconditional_heading_reaches_every_origin(self, db, make_entry):
        make_entry("9903.01.25", version=VERSION, description="Articles of all countries",
                   general_rate="The duty provided in the applicable subheading + 10%")
        make_entry("9903.88.03", version=VERSION, description="Articles the product of China",
                   general_rate="The duty provided in the applicable subheading + 25%")
        entry = make_entry("8471.30.01", version=VERSION, general_rate="2.6%",
                           chapter99_links=["9903.01.25", "9903.88.03"])

        Chapter99Synthesizer(db).run(VERSION)

        db.refresh(entry)
        assert entry.adjusted_formula == "(value * 0.026) + (value * 0.1)"
        assert entry.chapter99_applicable_countries is None
        synthesis = entry.metadata_["chapter99Synthesis"]
        assert synthesis["unconditionalHeadings"] == ["9903.01.25"]
        assert synthesis["countryFormulas"] == {"CN": "(value * 0.026) + (value * 0.1) + (value * 0.25)"}

        service = RateRetrievalService(db)
        german = service.get_rate("8471.30.01", "DE", VERSION)
        assert german["formula_type"] == "ADJUSTED"
        assert german["formula"] == "(value * 0.026) + (value * 0.1)"
        assert service.get_rate("8471.30.01", "CN", VERSION)["formula"] == \
            "(value * 0.026) + (value * 0.1) + (value * 0.25)"

    def test_country_headings_only_reach_their_countries(self):
        headings = build_heading_index([
            HtsEntry(code="9903.88.03", description="Articles the product of China",
                     general_rate="The duty provided in the applicable subheading + 25%"),
            HtsEntry(code="9903.90.01", description="Products of the Russian Federation",
                     general_rate="The duty provided in the applicable subheading + 35%"),
        ])
        entry = HtsEntry(code="7601.10.60", general_rate="Free", other_rate="11%",
                         chapter99_links=["9903.88.03", "9903.90.01"], metadata_={})

        target = synthesize_entry(entry, headings)

        assert target["adjusted_formula"] == "(0) + (value * 0.25)"
        assert target["chapter99_applicable_countries"] == ["CN", "RU"]
        assert target["metadata_"]["chapter99Synthesis"]["countryFormulas"] == {"RU": "(0) + (value * 0.35)"}
        detail = target["other_chapter99_detail"]
        assert detail["formula"] == "(value * 0.11) + (value * 0.35)"
        assert detail["countries"] == ["RU"]
        assert detail["headings"] == ["9903.90.01"]

    def test_unconditional_heading_applies_to_column_two(self):
        headings = build_heading_index([
            HtsEntry(code="9903.01.25", description="Articles of all countries",
                     general_rate="The duty provided in the applicable subheading + 10%"),
        ])
        entry = HtsEntry(code="7601.10.60", general_rate="Free", other_rate="11%",
                         chapter99_links=["9903.01.25"], metadata_={})

        detail = synthesize_entry(entry, headings)["other_chapter99_detail"]

        assert detail["formula"] == "(value * 0.11) + (value * 0.1)"
        assert detail["countries"] == ["BY", "CU", "KP", "RU"]

    def test_pass_through_heading_adds_no_surcharge(self):
        headings = build_heading_index([
            HtsEntry(code="9903.88.69", description="Articles the product of China",
                     general_rate="The duty provided in the applicable subheading"),
        ])
        assert headings["9903.88.69"]["surcharge"] is None
