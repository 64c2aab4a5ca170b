# WORKFLOW: Tests for batched, resumable promotion into the hts table.
# Test scenarios:
# 1. Inserts land inactive with compiled formulas and import metadata
# 2. Re-promotion skips identical rows and recompiles formulas on rate change
# 3. Confirmed rows keep their formulas
# 4. Crash after a committed batch resumes at the next batch without duplicates
# 5. A failing batch falls back to row-by-row processing

import pytest

from db.models import HtsEntry
from db.payloads import ImportCheckpoint
from etl.promotion import PromotionProcessor
from etl.staging_loader import StagingLoader

RECORDS = [
    {"htsno": f"0101.{index:02d}.00", "indent": "1", "description": f"Horse {index}", "units": ["kg"],
     "general": f"{index}%", "other": "$2.50/kg"}
    for index in range(1, 6)
]
VERSION = "2025_revision_1"


def staged_run(db, make_run, records=RECORDS):
    run = make_run(VERSION, checkpoint=ImportCheckpoint(stage="PROCESSING").dump())
    StagingLoader(db).stage(run.id, records)
    return run


class TestPromotion:
    def test_inserts_inactive_rows_with_formulas(self, db, make_run):
        run = staged_run(db, make_run)

        totals = PromotionProcessor(db, batch_size=2).promote(run.id, VERSION)

        assert totals == {"inserted": 5, "updated": 0, "skipped": 0, "failed": 0, "batches": 3}
        row = db.query(HtsEntry).filter_by(code="0101.05.00", version=VERSION).one()
        assert row.is_active is False
        assert row.rate_formula == "value * 0.05"
        assert row.other_rate_formula == "weight * 2.50"
        assert row.rate_variables[0]["name"] == "value"
        assert row.metadata_["importId"] == run.id

        db.refresh(run)
        checkpoint = ImportCheckpoint.load(run.checkpoint)
        assert checkpoint.processed_batches == 3
        assert checkpoint.total_batches == 3
        assert run.imported_entries == 5

    def test_second_promotion_skips_identical_rows(self, db, make_run):
        run = staged_run(db, make_run)
        PromotionProcessor(db).promote(run.id, VERSION)

        second = staged_run(db, make_run)
        totals = PromotionProcessor(db).promote(second.id, VERSION)

        assert totals["skipped"] == 5
        assert db.query(HtsEntry).count() == 5

    def test_rate_change_recompiles_unconfirmed_formula(self, db, make_run):
        run = staged_run(db, make_run)
        PromotionProcessor(db).promote(run.id, VERSION)
        confirmed = db.query(HtsEntry).filter_by(code="0101.02.00").one()
        confirmed.confirmed = True
        confirmed.rate_formula = "value * 0.021"
        db.commit()

        changed = [dict(record, general="7%") for record in RECORDS]
        second = staged_run(db, make_run, changed)
        totals = PromotionProcessor(db).promote(second.id, VERSION)

        assert totals["updated"] == 5
        assert db.query(HtsEntry).filter_by(code="0101.01.00").one().rate_formula == "value * 0.07"
        kept = db.query(HtsEntry).filter_by(code="0101.02.00").one()
        assert kept.general_rate == "7%"
        assert kept.rate_formula == "value * 0.021"

    def test_crash_resumes_after_last_committed_batch(self, db, make_run):
        run = staged_run(db, make_run)

        def crash_after_second_batch(batch_number, counters):
            if batch_number == 2:
                raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            PromotionProcessor(db, batch_size=2, on_batch=crash_after_second_batch).promote(run.id, VERSION)

        db.refresh(run)
        assert ImportCheckpoint.load(run.checkpoint).processed_batches == 2
        assert db.query(HtsEntry).count() == 4

        totals = PromotionProcessor(db, batch_size=2).promote(run.id, VERSION)

        assert totals["batches"] == 1
        assert totals["inserted"] == 1
        codes = [row.code for row in db.query(HtsEntry).filter_by(version=VERSION)]
        assert sorted(codes) == sorted(record["htsno"] for record in RECORDS)
        db.refresh(run)
        assert run.imported_entries == 5

    def test_failed_batch_falls_back_to_rows(self, db, make_run, monkeypatch):
        run = staged_run(db, make_run)
        processor = PromotionProcessor(db, batch_size=5)
        original = processor._apply

        def flaky_apply(entry, import_id, version):
            if entry.code == "0101.03.00":
                raise ValueError("bad row")
            return original(entry, import_id, version)

        monkeypatch.setattr(processor, "_apply", flaky_apply)
        totals = processor.promote(run.id, VERSION)

        assert totals["inserted"] == 4
        assert totals["failed"] == 1
        db.refresh(run)
        assert run.failed_entries_detail == [{"code": "0101.03.00", "error": "bad row", "batch": 1}]
