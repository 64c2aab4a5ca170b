# WORKFLOW: Note resolver for rate text that refers to legal notes instead of a rate.
# Used by: Rate validator (exact-only formula readiness), enrichment (note formulas), rate retrieval
# Functions:
# 1. parse_note_reference() - Extract chapter and note number from rate text
# 2. NoteResolver.resolve_note_reference() - Collaborator interface
# 3. TableNoteResolver - Exact match against the hts_notes table
#
# Resolution flow: Rate text -> Parse "note 2(b) to chapter 99" -> Exact lookup -> {formula, variables}
# Semantic search over note text is outside this service.

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from db.models import HtsNote
from etl.formula_compiler import extract_variables

logger = logging.getLogger(__name__)

NOTE_REFERENCE_PATTERN = re.compile(
    r'(general\s+)?note\s+(\d+(?:\([a-z0-9]+\))*)'
    r'(?:\s+(?:to|of)\s+(?:this\s+)?chapter\s+(\d{1,2}))?',
    re.IGNORECASE,
)
CHAPTER_NOTE_PATTERN = re.compile(r'chapter\s+(\d{1,2})\s+(?:u\.s\.\s+)?note\s+(\d+(?:\([a-z0-9]+\))*)', re.IGNORECASE)

GENERAL_NOTES_CHAPTER = "00"


def parse_note_reference(reference_text: str, code: Optional[str] = None) -> Optional[Dict[str, str]]:
    """
    Parse a note reference.

    Args:
        reference_text: Rate text (e.g., "See general note 3(a)", "note 2(b) to chapter 99")
        code: HTS code the text belongs to; its chapter is the default

    Returns:
        {"chapter", "note_number"} or None
    """
    if not reference_text:
        return None

    match = CHAPTER_NOTE_PATTERN.search(reference_text)
    if match:
        return {"chapter": match.group(1).zfill(2), "note_number": match.group(2).lower()}

    match = NOTE_REFERENCE_PATTERN.search(reference_text)
    if not match:
        return None

    if match.group(1):
        chapter = GENERAL_NOTES_CHAPTER
    elif match.group(3):
        chapter = match.group(3).zfill(2)
    elif code:
        chapter = re.sub(r'\D', '', code)[:2]
    else:
        return None
    return {"chapter": chapter, "note_number": match.group(2).lower()}


class NoteResolver(ABC):
    """Resolves note-referencing rate text to a formula."""

    @abstractmethod
    def resolve_note_reference(
        self,
        code: Optional[str],
        reference_text: Optional[str],
        source_column: str = "general",
        year: Optional[int] = None,
        exact_only: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Return {"formula", "variables", "confidence", ...} or None."""


class TableNoteResolver(NoteResolver):
    """Exact-match resolver backed by the hts_notes table."""

    def __init__(self, db: Session):
        self.db = db

    def resolve_note_reference(
        self,
        code: Optional[str],
        reference_text: Optional[str],
        source_column: str = "general",
        year: Optional[int] = None,
        exact_only: bool = False,
    ) -> Optional[Dict[str, Any]]:
        parsed = parse_note_reference(reference_text or "", code)
        if not parsed:
            return None

        query = self.db.query(HtsNote).filter(
            HtsNote.chapter == parsed["chapter"],
            HtsNote.note_number == parsed["note_number"],
            HtsNote.formula.isnot(None),
        )
        if year is not None:
            query = query.filter((HtsNote.year == year) | (HtsNote.year.is_(None)))
        note = query.order_by(HtsNote.year.desc(), HtsNote.id.desc()).first()
        if note is None:
            logger.debug(
                f"No note match for {code} ({source_column}): chapter {parsed['chapter']} note {parsed['note_number']}"
            )
            return None

        return {
            "formula": note.formula,
            "variables": note.variables or extract_variables(note.formula),
            "confidence": 1.0,
            "match": "exact",
            "note_id": note.id,
            "chapter": note.chapter,
            "note_number": note.note_number,
        }
