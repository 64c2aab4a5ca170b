# WORKFLOW: Rate lookup endpoint returning the duty formula for a code and origin country.
# Used by: Landed-cost calculators, admin UI
# Endpoints:
# 1. GET /rates/{code}?country=CN&version=2025_revision_3 - Resolved formula and its provenance
#
# Request flow: HTTP GET -> RateRetrievalService -> Override / stored / compiled / note formula -> Response

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional
import logging

from db.session import get_db
from api.schemas.response import RateResponse
from services.note_resolver import TableNoteResolver
from services.rate_retrieval import RateRetrievalService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rates", tags=["rates"])


@router.get("/{code}", response_model=RateResponse)
def get_rate(
    code: str,
    country: str = Query("ALL", min_length=2, max_length=3, description="Origin country code"),
    version: Optional[str] = Query(None, description="Schedule version; active version when omitted"),
    db: Session = Depends(get_db),
):
    """Resolve the duty formula for an HTS code and country of origin."""
    service = RateRetrievalService(db, TableNoteResolver(db))
    try:
        result = service.get_rate(code, country, version)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info(f"Rate lookup {code}/{country}: {result['formula_type']} from {result['source']}")
    return {**result, "country": country.upper()}
