# WORKFLOW: Typed payloads stored in JSON columns of the import pipeline tables.
# Used by: Orchestrator, staging loader, validator, Chapter-99 synthesizer, rate retrieval
# Types:
# 1. ImportStatus / ImportStage - Import run lifecycle and checkpoint stages
# 2. Severity / DiffType / FormulaType - Issue, diff and formula slot enums
# 3. ImportCheckpoint - Stage plus resume pointers, advanced monotonically
# 4. NormalizedEntry - Normalized staged row (hashed into row_hash)
# 5. ValidationSummary / FormulaValidationSummary - Gate inputs persisted on ImportRun
# 6. Chapter99Synthesis / OtherChapter99Detail - Chapter-99 metadata on duty records
# 7. FormulaVariable - Variable descriptor attached to formulas
#
# Columns hold plain dicts; these models are the only way code reads or writes them.

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.exceptions import InvalidStageTransitionError


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    STAGED_READY = "STAGED_READY"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    ROLLED_BACK = "ROLLED_BACK"


class ImportStage(str, Enum):
    DOWNLOADING = "DOWNLOADING"
    DOWNLOADED = "DOWNLOADED"
    STAGING = "STAGING"
    VALIDATING = "VALIDATING"
    DIFFING = "DIFFING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


STAGE_ORDER = [
    ImportStage.DOWNLOADING,
    ImportStage.DOWNLOADED,
    ImportStage.STAGING,
    ImportStage.VALIDATING,
    ImportStage.DIFFING,
    ImportStage.PROCESSING,
    ImportStage.COMPLETED,
]


class Severity(str, Enum):
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class DiffType(str, Enum):
    ADDED = "ADDED"
    CHANGED = "CHANGED"
    UNCHANGED = "UNCHANGED"
    REMOVED = "REMOVED"


class FormulaType(str, Enum):
    GENERAL = "GENERAL"
    OTHER = "OTHER"
    ADJUSTED = "ADJUSTED"
    OTHER_CHAPTER99 = "OTHER_CHAPTER99"


class ImportCheckpoint(BaseModel):
    """Resume state of an import run."""

    stage: Optional[ImportStage] = None
    bucket: Optional[str] = None
    s3_key: Optional[str] = None
    file_hash: Optional[str] = None
    file_size: Optional[int] = None
    staged_records: int = 0
    last_chapter: Optional[str] = None
    processed_batches: int = 0
    processed_records: int = 0
    total_batches: int = 0

    def advance(self, stage: ImportStage) -> "ImportCheckpoint":
        """
        Return a copy moved forward to ``stage``.

        Re-entering the current stage is allowed (resume); moving backwards is not.
        """
        if self.stage is not None and STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage):
            raise InvalidStageTransitionError(
                f"Checkpoint cannot move from {self.stage.value} back to {stage.value}"
            )
        return self.model_copy(update={"stage": stage})

    @classmethod
    def load(cls, data: Optional[Dict[str, Any]]) -> "ImportCheckpoint":
        return cls.model_validate(data or {})

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class FormulaVariable(BaseModel):
    name: str
    type: str = "number"
    description: Optional[str] = None
    unit: Optional[str] = None


VARIABLE_DESCRIPTIONS = {
    "value": "Declared value of goods in USD",
    "weight": "Weight of goods in kilograms",
    "quantity": "Number of imported items",
}


def describe_variables(names: List[str]) -> List[Dict[str, Any]]:
    """Build variable descriptors for formula variable names."""
    return [
        FormulaVariable(
            name=name, description=VARIABLE_DESCRIPTIONS.get(name, "Input variable")
        ).model_dump(exclude_none=True)
        for name in names
    ]


class NormalizedEntry(BaseModel):
    """Normalized form of one source record; its JSON is hashed into row_hash."""

    code: str
    indent: int = 0
    description: str = ""
    unit: Optional[str] = None
    general_rate: Optional[str] = None
    special_rate: Optional[str] = None
    special_rates: Optional[Dict[str, str]] = None
    other_rate: Optional[str] = None
    chapter99_rate: Optional[str] = None
    footnotes: Optional[str] = None
    quota: Optional[str] = None
    chapter: str
    heading: Optional[str] = None
    subheading: Optional[str] = None
    statistical_suffix: Optional[str] = None
    parent_code: Optional[str] = None
    parent_codes: List[str] = Field(default_factory=list)
    full_description: List[str] = Field(default_factory=list)
    chapter99_links: List[str] = Field(default_factory=list)


class ValidationSummary(BaseModel):
    errorCount: int = 0
    warningCount: int = 0
    infoCount: int = 0
    formulaCoverage: float = 0.0
    formulaGatePassed: bool = False


class FormulaValidationSummary(BaseModel):
    totalRateFields: int = 0
    formulaResolvableCount: int = 0
    formulaUnresolvedCount: int = 0
    noteReferenceCount: int = 0
    noteResolvedCount: int = 0
    noteUnresolvedCount: int = 0
    nonNoteResolvableCount: int = 0
    nonNoteUnresolvedCount: int = 0
    minCoverage: float = 0.995
    currentCoverage: float = 0.0
    formulaGatePassed: bool = False
    allowUnresolvedNotes: bool = False
    noteFormulaPolicy: str = "STRICT"


class Chapter99Synthesis(BaseModel):
    """Outcome of Chapter-99 synthesis for one duty record. Contains no timestamps."""

    unresolved: bool = False
    reason: Optional[str] = None
    reciprocalOnly: bool = False
    links: List[str] = Field(default_factory=list)
    appliedHeadings: List[str] = Field(default_factory=list)
    excludedHeadings: List[str] = Field(default_factory=list)
    surcharges: Dict[str, str] = Field(default_factory=dict)
    unconditionalHeadings: List[str] = Field(default_factory=list)
    # Countries whose adjusted formula differs from adjusted_formula
    countryFormulas: Dict[str, str] = Field(default_factory=dict)


class OtherChapter99Detail(BaseModel):
    formula: Optional[str] = None
    variables: List[Dict[str, Any]] = Field(default_factory=list)
    countries: List[str] = Field(default_factory=list)
    headings: List[str] = Field(default_factory=list)
    countryFormulas: Dict[str, str] = Field(default_factory=dict)
