# WORKFLOW: Pydantic request schemas for API input validation.
# Used by: Import and rate endpoints for request validation and documentation
# Schemas include:
# 1. CreateImportRequest - For POST /imports
# 2. PromoteImportRequest - For POST /imports/{id}/promote
# 3. RejectImportRequest - For POST /imports/{id}/reject
# 4. ImportActionRequest - Actor for execute/rollback/retry actions
#
# Validation flow: HTTP request -> Pydantic validation -> Endpoint processing
# Ensures all inputs are properly formatted and validated before processing.

from pydantic import BaseModel, Field, field_validator
from typing import Optional


class CreateImportRequest(BaseModel):
    """Request schema for creating an import run."""
    version: Optional[str] = Field(
        None, pattern=r"^\d{4}_revision_\d+$",
        description="Schedule version (e.g., 2025_revision_3); latest published when omitted"
    )
    source_url: Optional[str] = Field(None, description="Explicit source URL")
    started_by: str = Field("api", min_length=1, max_length=100, description="Actor starting the import")
    execute: bool = Field(False, description="Run the automatic stages immediately")


class ImportActionRequest(BaseModel):
    """Request schema for actions that only record an actor."""
    actor: str = Field("api", min_length=1, max_length=100, description="Actor performing the action")


class PromoteImportRequest(ImportActionRequest):
    """Request schema for promotion."""
    validation_override: bool = Field(False, description="Promote even if the validation gate fails")


class RejectImportRequest(ImportActionRequest):
    """Request schema for rejection."""
    reason: str = Field(..., min_length=1, max_length=2000, description="Why the import was rejected")

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if not v.strip():
            raise ValueError("Rejection reason cannot be blank")
        return v.strip()
