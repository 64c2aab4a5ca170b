# WORKFLOW: Exception taxonomy for the HTS import pipeline.
# Used by: Fetcher, storage backends, orchestrator, formula compiler, API routers
# Exceptions:
# 1. FetchError - Network/HTTP failure while downloading the source dataset
# 2. StorageError - Object storage read/write failure
# 3. ImportNotFoundError - Unknown import run id
# 4. InvalidStageTransitionError - Checkpoint moved backwards or action not allowed
# 5. PromotionBlockedError - Promotion gate failed without an override
# 6. FormulaSafetyError - Formula rejected by the arithmetic safety validator
#
# Stage failures surface as FAILED import runs and are re-raised for the job queue.

from typing import Any, Dict, Optional


class HtsImportError(Exception):
    """Base class for pipeline errors."""


class FetchError(HtsImportError):
    """Raised when the source dataset cannot be downloaded."""

    def __init__(self, message: str, url: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class StorageError(HtsImportError):
    """Raised when object storage cannot serve a request."""


class ImportNotFoundError(HtsImportError):
    """Raised when an import run id does not exist."""

    def __init__(self, import_id: int):
        super().__init__(f"Import {import_id} not found")
        self.import_id = import_id


class InvalidStageTransitionError(HtsImportError):
    """Raised when a checkpoint would move backwards or an action is not allowed."""


class PromotionBlockedError(HtsImportError):
    """Raised when the promotion gate fails and no override is set."""

    def __init__(self, message: str, gate: Dict[str, Any]):
        super().__init__(message)
        self.gate = gate


class FormulaSafetyError(HtsImportError):
    """Raised when a formula string fails arithmetic safety validation."""

    def __init__(self, formula: str, reason: str):
        super().__init__(f"Unsafe formula '{formula}': {reason}")
        self.formula = formula
        self.reason = reason
