# WORKFLOW: Tests for record normalization and idempotent staging.
# Test scenarios:
# 1. Field aliases, special rates, footnotes and Chapter-99 links
# 2. Hierarchy from indentation (per-chapter stack, heading fallback)
# 3. Header rows skipped, duplicate codes reported and first occurrence kept
# 4. Re-staging the same input leaves rows untouched; stale codes are removed

from db.models import StageDiff, StagedEntry, ValidationIssue
from etl.staging_loader import (
    StagingLoader, apply_hierarchy, compute_row_hash, extract_chapter99_links, normalize_footnotes,
    normalize_record, parse_special_rates,
)

RECORDS = [
    {"htsno": "", "indent": "0", "description": "Section I: Live animals"},
    {"htsno": "01", "indent": "0", "description": "Chapter 1"},
    {"htsno": "0101", "indent": "0", "description": "Live horses, asses, mules and hinnies:"},
    {"htsno": "0101.21.00", "indent": "1", "description": "Purebred breeding animals", "units": ["No."],
     "general": "Free", "special": "", "other": "Free"},
    {"htsno": "0101.29.00", "indent": "1", "description": "Other", "units": ["No."],
     "general": "4.5%", "special": "Free (A+,AU,CL)", "other": "20%",
     "footnotes": [{"value": "See 9903.88.15."}]},
    {"htsno": "0101.29.00.10", "indent": "2", "description": "Imported for immediate slaughter", "units": ["No."]},
    {"htsno": "0102", "indent": "0", "description": "Live bovine animals:"},
    {"htsno": "0201.10.00", "indent": "1", "description": "Carcasses", "general": "26.4%", "other": "26.4%"},
]


class TestNormalization:
    def test_header_rows_are_skipped(self):
        assert normalize_record(RECORDS[0]) is None
        assert normalize_record(RECORDS[1]) is None

    def test_field_aliases(self):
        entry = normalize_record({"htsno": "0101.21.00", "unit": "kg", "2": "20%", "quota": "100 t",
                                  "additionalDuties": "+25%", "indent": "x"})
        assert entry.unit == "kg"
        assert entry.other_rate == "20%"
        assert entry.quota == "100 t"
        assert entry.chapter99_rate == "+25%"
        assert entry.indent == 0
        assert (entry.chapter, entry.heading, entry.subheading) == ("01", "0101", "010121")

    def test_statistical_suffix(self):
        assert normalize_record(RECORDS[5]).statistical_suffix == "10"

    def test_special_rates(self):
        assert parse_special_rates("Free (A+,AU,CL) 2.5% (JO)") == {"A+": "Free", "AU": "Free", "CL": "Free", "JO": "2.5%"}
        assert parse_special_rates("Free") == {"ALL": "Free"}
        assert parse_special_rates("") is None

    def test_footnotes_and_links(self):
        footnotes = normalize_footnotes([{"value": "See 9903.88.15."}, "Also 9903.88.03"])
        assert footnotes == "See 9903.88.15. Also 9903.88.03"
        assert extract_chapter99_links(footnotes) == ["9903.88.03", "9903.88.15"]
        assert normalize_record(RECORDS[4]).chapter99_links == ["9903.88.15"]

    def test_hierarchy(self):
        entries = apply_hierarchy([normalize_record(raw) for raw in RECORDS[2:]])
        parents = {entry.code: entry.parent_code for entry in entries}
        assert parents["0101"] is None
        assert parents["0101.21.00"] == "0101"
        assert parents["0101.29.00.10"] == "0101.29.00"
        # New chapter resets the stack; no ancestor row, so the heading is used.
        assert parents["0201.10.00"] == "0201"
        slaughter = entries[3]
        assert slaughter.parent_codes == ["0101", "0101.29.00"]
        assert slaughter.full_description[-1] == "Imported for immediate slaughter"

    def test_row_hash_is_stable(self):
        first = normalize_record(RECORDS[3])
        second = normalize_record(dict(RECORDS[3]))
        assert compute_row_hash(first) == compute_row_hash(second)
        changed = normalize_record({**RECORDS[3], "general": "1%"})
        assert compute_row_hash(first) != compute_row_hash(changed)


class TestStagingLoader:
    def test_stage_counts(self, db, make_run):
        run = make_run()
        stats = StagingLoader(db, batch_size=2).stage(run.id, RECORDS)
        assert stats["staged"] == 6
        assert stats["inserted"] == 6
        assert stats["skipped"] == 2
        assert stats["duplicate_codes"] == []
        assert stats["last_chapter"] == "02"

    def test_restaging_same_input_is_idempotent(self, db, make_run):
        run = make_run()
        loader = StagingLoader(db, batch_size=2)
        loader.stage(run.id, RECORDS)
        before = {row.code: (row.id, row.row_hash, row.updated_at) for row in db.query(StagedEntry).all()}

        stats = loader.stage(run.id, RECORDS)

        after = {row.code: (row.id, row.row_hash, row.updated_at) for row in db.query(StagedEntry).all()}
        assert stats["unchanged"] == 6
        assert stats["inserted"] == 0 and stats["updated"] == 0
        assert before == after

    def test_restaging_updates_changed_and_removes_stale(self, db, make_run):
        run = make_run()
        loader = StagingLoader(db)
        loader.stage(run.id, RECORDS)

        changed = [dict(record) for record in RECORDS[:-1]]
        changed[3]["general"] = "1%"
        stats = loader.stage(run.id, changed)

        assert stats["updated"] == 1
        assert stats["removed"] == 1
        codes = {row.code for row in db.query(StagedEntry).filter(StagedEntry.import_id == run.id)}
        assert "0201.10.00" not in codes
        row = db.query(StagedEntry).filter(StagedEntry.code == "0101.21.00").one()
        assert row.general_rate == "1%"

    def test_duplicates_keep_first_occurrence(self, db, make_run):
        run = make_run()
        duplicate = {**RECORDS[3], "description": "Second copy"}
        stats = StagingLoader(db).stage(run.id, RECORDS + [duplicate])
        assert stats["duplicate_codes"] == [{"code": "0101.21.00", "occurrences": 2}]
        row = db.query(StagedEntry).filter(StagedEntry.code == "0101.21.00").one()
        assert row.description == "Purebred breeding animals"

    def test_stage_clears_issues_and_diffs(self, db, make_run):
        run = make_run()
        db.add(ValidationIssue(import_id=run.id, issue_code="X", severity="ERROR", message="old"))
        db.add(StageDiff(import_id=run.id, code="0101", diff_type="ADDED"))
        db.commit()

        StagingLoader(db).stage(run.id, RECORDS)

        summary = StagingLoader(db).stage_summary(run.id)
        assert summary["stagedCount"] == 6
        assert summary["issues"] == {"ERROR": 0, "WARNING": 0, "INFO": 0}
        assert db.query(StageDiff).count() == 0
