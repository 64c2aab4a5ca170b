# WORKFLOW: Tests for the staged-vs-active diff engine.
# Test scenarios:
# 1. Field-level changes, unordered link comparison
# 2. Extra tax overlay matching (exact, "*", prefix*, chapter)
# 3. ADDED / CHANGED / UNCHANGED / REMOVED classification persisted per import
# 4. Identical staged and active sets produce no changes

from db.models import ExtraTax, HtsEntry, StageDiff
from db.repositories import StageDiffRepository
from etl.diff_engine import DiffEngine, diff_fields, tax_matches
from etl.staging_loader import StagingLoader

RECORDS = [
    {"htsno": "0101", "indent": "0", "description": "Live horses"},
    {"htsno": "0101.21.00", "indent": "1", "description": "Purebred", "units": ["No."], "general": "Free",
     "other": "Free"},
    {"htsno": "0101.29.00", "indent": "1", "description": "Other", "units": ["No."], "general": "4.5%",
     "other": "20%"},
]


def test_diff_fields_compares_links_as_sets():
    before = {"description": "A", "chapter99_links": ["9903.88.15", "9903.88.03"]}
    after = {"description": "A ", "chapter99_links": ["9903.88.03", "9903.88.15"]}
    assert diff_fields(before, after) == {}
    assert diff_fields({"general_rate": "3%"}, {"general_rate": "4.5%"}) == {
        "general_rate": {"before": "3%", "after": "4.5%"}
    }


def test_tax_matching():
    assert tax_matches(ExtraTax(code_pattern="*"), "0101.21.00", "01")
    assert tax_matches(ExtraTax(code_pattern="0101*"), "0101.21.00", "01")
    assert not tax_matches(ExtraTax(code_pattern="0102*"), "0101.21.00", "01")
    assert tax_matches(ExtraTax(code_pattern="0101.21.00"), "0101.21.00", "01")
    assert tax_matches(ExtraTax(chapter="01"), "0101.21.00", "01")
    assert not tax_matches(ExtraTax(chapter="02"), "0101.21.00", "01")


class TestDiffEngine:
    def seed_active(self, make_entry, general_for_other="3%"):
        make_entry("0101", indent=0, description="Live horses")
        make_entry("0101.29.00", indent=1, description="Other", unit="No.", general_rate=general_for_other,
                   other_rate="20%", parent_code="0101")
        make_entry("0102.21.00", indent=1, description="Cattle", general_rate="Free", parent_code="0102")
        make_entry("0103.10.00", version="2023_revision_1", is_active=False, description="Old swine")

    def test_classifies_every_row(self, db, make_entry, make_run):
        self.seed_active(make_entry)
        db.add(ExtraTax(tax_code="MPF", tax_name="Merchandise processing fee", code_pattern="*",
                        rate_type="PERCENTAGE", rate_percent=0.3464))
        db.commit()
        run = make_run()
        StagingLoader(db).stage(run.id, RECORDS)

        counts = DiffEngine(db).run(run.id)

        assert counts == {"ADDED": 1, "CHANGED": 1, "UNCHANGED": 1, "REMOVED": 1}
        diffs = {diff.code: diff for diff in db.query(StageDiff).filter(StageDiff.import_id == run.id)}
        assert diffs["0101.21.00"].diff_type == "ADDED"
        assert diffs["0101.21.00"].summary["after"]["general_rate"] == "Free"
        assert diffs["0101.29.00"].summary["changes"] == {"general_rate": {"before": "3%", "after": "4.5%"}}
        assert diffs["0102.21.00"].diff_type == "REMOVED"
        assert diffs["0102.21.00"].summary["before"]["description"] == "Cattle"
        assert "0103.10.00" not in diffs
        assert diffs["0101"].summary["extraTaxes"][0]["taxCode"] == "MPF"

    def test_identical_sets_have_no_changes(self, db, make_entry, make_run):
        self.seed_active(make_entry, general_for_other="4.5%")
        make_entry("0101.21.00", indent=1, description="Purebred", unit="No.", general_rate="Free",
                   other_rate="Free", parent_code="0101")
        db.query(HtsEntry).filter_by(code="0102.21.00").update({"is_active": False})
        db.commit()
        run = make_run()
        StagingLoader(db).stage(run.id, RECORDS)

        counts = DiffEngine(db).run(run.id)

        assert counts["ADDED"] == counts["CHANGED"] == counts["REMOVED"] == 0
        assert counts["UNCHANGED"] == 3

    def test_rerun_replaces_previous_diffs(self, db, make_entry, make_run):
        self.seed_active(make_entry)
        run = make_run()
        StagingLoader(db).stage(run.id, RECORDS)
        engine = DiffEngine(db, batch_size=1)
        engine.run(run.id)
        engine.run(run.id)
        assert sum(StageDiffRepository(db).counts_by_type(run.id).values()) == 4
