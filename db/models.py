# WORKFLOW: Database models for the HTS import pipeline.
# Used by: Staging loader, validator, diff engine, promotion, enrichment, API endpoints
# Models represent:
# 1. hts_import_runs - One import of a schedule version (status, checkpoint, counters, log)
# 2. hts_stage_entries - Normalized staged rows keyed by (import_id, code)
# 3. hts_stage_validation_issues - Severity-tagged validation findings per import
# 4. hts_stage_diffs - ADDED/CHANGED/UNCHANGED/REMOVED classification per import
# 5. hts - Production duty records, one row per (code, version), is_active flag
# 6. hts_extra_taxes - Country/chapter/code scoped surcharge overlays
# 7. hts_formula_updates - Admin formula overrides with carryover flag
# 8. hts_notes - Legal note text with resolved formulas (note resolver)
#
# Data flow: USITC JSON -> Storage -> Stage entries -> Issues/Diffs -> hts -> Enrichment

from datetime import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ImportRun(Base):
    __tablename__ = "hts_import_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_version = Column(String(50), nullable=False)
    source_url = Column(Text, nullable=True)
    source_file_hash = Column(String(64), nullable=True)
    status = Column(String(30), nullable=False, default="PENDING")
    checkpoint = Column(JSON, nullable=True)

    total_entries = Column(Integer, default=0)
    imported_entries = Column(Integer, default=0)
    updated_entries = Column(Integer, default=0)
    skipped_entries = Column(Integer, default=0)
    failed_entries = Column(Integer, default=0)
    failed_entries_detail = Column(JSON, nullable=True)  # [{code, error}]

    import_log = Column(JSON, nullable=True)  # list of lines
    metadata_ = Column("metadata", JSON, nullable=True)
    rollback_info = Column(JSON, nullable=True)

    started_by = Column(String(100), nullable=False, default="system")
    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    import_started_at = Column(DateTime, nullable=True)
    import_completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_import_runs_version', 'source_version'),
        Index('idx_import_runs_status', 'status'),
    )


class StagedEntry(Base):
    __tablename__ = "hts_stage_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_id = Column(Integer, ForeignKey("hts_import_runs.id"), nullable=False)
    code = Column(String(20), nullable=False)
    description = Column(Text, nullable=False, default="")
    unit = Column(String(50), nullable=True)
    general_rate = Column(Text, nullable=True)
    special_rate = Column(Text, nullable=True)
    other_rate = Column(Text, nullable=True)
    chapter99_rate = Column(Text, nullable=True)
    chapter = Column(String(2), nullable=False)
    heading = Column(String(4), nullable=True)
    subheading = Column(String(6), nullable=True)
    statistical_suffix = Column(String(2), nullable=True)
    parent_code = Column(String(20), nullable=True)
    indent = Column(Integer, nullable=False, default=0)
    chapter99_links = Column(JSON, nullable=True)
    normalized = Column(JSON, nullable=False)
    raw_item = Column(JSON, nullable=True)
    row_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('import_id', 'code', name='uq_stage_import_code'),
        Index('idx_stage_import_chapter', 'import_id', 'chapter'),
    )


class ValidationIssue(Base):
    __tablename__ = "hts_stage_validation_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_id = Column(Integer, ForeignKey("hts_import_runs.id"), nullable=False)
    stage_entry_id = Column(Integer, ForeignKey("hts_stage_entries.id"), nullable=True)
    code = Column(String(20), nullable=True)
    issue_code = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)
    field = Column(String(30), nullable=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_issue_import_severity', 'import_id', 'severity'),
    )


class StageDiff(Base):
    __tablename__ = "hts_stage_diffs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_id = Column(Integer, ForeignKey("hts_import_runs.id"), nullable=False)
    stage_entry_id = Column(Integer, ForeignKey("hts_stage_entries.id"), nullable=True)
    current_id = Column(Integer, ForeignKey("hts.id"), nullable=True)
    code = Column(String(20), nullable=False)
    diff_type = Column(String(10), nullable=False)
    summary = Column(JSON, nullable=True)  # {changes: {field: {before, after}}, extraTaxes: [...]}
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_diff_import_type', 'import_id', 'diff_type'),
    )


class HtsEntry(Base):
    __tablename__ = "hts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), nullable=False)
    version = Column(String(50), nullable=False)
    indent = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False, default="")
    unit = Column(String(50), nullable=True)

    general_rate = Column(Text, nullable=True)
    rate_formula = Column(Text, nullable=True)
    rate_variables = Column(JSON, nullable=True)
    is_formula_generated = Column(Boolean, default=False)

    other_rate = Column(Text, nullable=True)
    other_rate_formula = Column(Text, nullable=True)
    other_rate_variables = Column(JSON, nullable=True)
    is_other_formula_generated = Column(Boolean, default=False)

    special_rate = Column(Text, nullable=True)
    special_rates = Column(JSON, nullable=True)

    chapter99_rate = Column(Text, nullable=True)
    chapter99_links = Column(JSON, nullable=True)
    chapter99_applicable_countries = Column(JSON, nullable=True)
    non_ntr_applicable_countries = Column(JSON, nullable=True)
    adjusted_formula = Column(Text, nullable=True)
    adjusted_formula_variables = Column(JSON, nullable=True)
    is_adjusted_formula_generated = Column(Boolean, default=False)
    other_chapter99_detail = Column(JSON, nullable=True)

    footnotes = Column(Text, nullable=True)
    quota = Column(Text, nullable=True)
    chapter = Column(String(2), nullable=False)
    heading = Column(String(4), nullable=True)
    subheading = Column(String(6), nullable=True)
    statistical_suffix = Column(String(2), nullable=True)
    parent_code = Column(String(20), nullable=True)
    parent_codes = Column(JSON, nullable=True)
    full_description = Column(JSON, nullable=True)
    is_heading = Column(Boolean, default=False)
    is_subheading = Column(Boolean, default=False)
    has_children = Column(Boolean, default=False)

    source_version = Column(String(50), nullable=True)
    import_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True)
    confirmed = Column(Boolean, default=False)
    required_review = Column(Boolean, default=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('code', 'version', name='uq_hts_code_version'),
        Index('idx_hts_code_active', 'code', 'is_active'),
        Index('idx_hts_chapter', 'chapter'),
    )


class ExtraTax(Base):
    __tablename__ = "hts_extra_taxes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tax_code = Column(String(50), nullable=False)
    tax_name = Column(String(200), nullable=False)
    code_pattern = Column(String(20), nullable=True)  # exact code, "*" or "8471*"
    chapter = Column(String(2), nullable=True)
    country_code = Column(String(3), nullable=False, default="ALL")
    rate_type = Column(String(20), nullable=False, default="PERCENTAGE")
    rate_percent = Column(Float, nullable=True)
    formula = Column(Text, nullable=True)
    effective_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True)

    __table_args__ = (
        Index('idx_extra_tax_pattern', 'code_pattern'),
        Index('idx_extra_tax_chapter', 'chapter'),
    )


class FormulaOverride(Base):
    __tablename__ = "hts_formula_updates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), nullable=False)
    country_code = Column(String(3), nullable=False, default="ALL")
    formula_type = Column(String(20), nullable=False)
    formula = Column(Text, nullable=False)
    formula_variables = Column(JSON, nullable=True)
    comment = Column(Text, nullable=True)
    active = Column(Boolean, default=True)
    carryover = Column(Boolean, default=False)
    override_extra_tax = Column(Boolean, default=False)
    update_version = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_formula_update_lookup', 'code', 'country_code', 'formula_type'),
    )


class HtsNote(Base):
    __tablename__ = "hts_notes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    year = Column(Integer, nullable=True)
    chapter = Column(String(2), nullable=False)
    note_number = Column(String(20), nullable=False)  # "2", "2(b)", "3(a)(i)"
    note_text = Column(Text, nullable=True)
    formula = Column(Text, nullable=True)
    variables = Column(JSON, nullable=True)

    __table_args__ = (
        Index('idx_note_chapter_number', 'chapter', 'note_number'),
    )
