# WORKFLOW: Pydantic response schemas for the import and rate endpoints.
# Used by: Import router, rates router, API tests
# Schemas include:
# 1. ImportRunResponse - Import run status, checkpoint, counters and summaries
# 2. ImportSummaryResponse - Staged counts, issue and diff counts, promotion gate
# 3. StageDiffResponse / ValidationIssueResponse - Paged review listings
# 4. RateResponse - Resolved formula for (code, country, version)
#
# Response flow: ORM row / service dict -> Pydantic model -> JSON response

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class ImportRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_version: str
    source_url: Optional[str] = None
    source_file_hash: Optional[str] = None
    status: str
    checkpoint: Optional[Dict[str, Any]] = None
    total_entries: Optional[int] = 0
    imported_entries: Optional[int] = 0
    updated_entries: Optional[int] = 0
    skipped_entries: Optional[int] = 0
    failed_entries: Optional[int] = 0
    failed_entries_detail: Optional[List[Dict[str, Any]]] = None
    import_log: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_")
    rollback_info: Optional[Dict[str, Any]] = None
    started_by: str
    error_message: Optional[str] = None
    import_started_at: Optional[datetime] = None
    import_completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    created_at: Optional[datetime] = None


class GateResponse(BaseModel):
    passed: bool
    errorCount: Optional[int] = None
    formulaCoverage: Optional[float] = None
    minCoverage: float
    noteUnresolvedCount: Optional[int] = None
    allowUnresolvedNotes: bool
    reasons: List[str] = Field(default_factory=list)
    divergence: Dict[str, Any] = Field(default_factory=dict)


class ImportSummaryResponse(BaseModel):
    importId: int
    status: str
    version: str
    stagedCount: int
    issues: Dict[str, int]
    diffs: Dict[str, int]
    checkpoint: Dict[str, Any] = Field(default_factory=dict)
    validationSummary: Optional[Dict[str, Any]] = None
    formulaValidationSummary: Optional[Dict[str, Any]] = None
    gate: GateResponse


class StageDiffResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    diff_type: str
    stage_entry_id: Optional[int] = None
    current_id: Optional[int] = None
    summary: Optional[Dict[str, Any]] = None


class ValidationIssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: Optional[str] = None
    issue_code: str
    severity: str
    field: Optional[str] = None
    message: str
    details: Optional[Dict[str, Any]] = None


class RateResponse(BaseModel):
    code: str
    version: str
    country: str
    formula: str
    formula_type: str
    source: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    variables: Optional[List[Dict[str, Any]]] = None
    override_extra_tax: bool = False
