# WORKFLOW: Command-line driver for HTS schedule imports.
# Used by: Cron jobs, job queue workers, operators
# Functions:
# 1. check_updates() - Report whether a newer schedule revision is published
# 2. run_import() - Create (or resume) an import run and execute its automatic stages
# 3. promote_import() - Promote a reviewed run, optionally overriding the gate
# 4. main() - Argument parsing and exit codes
#
# CLI flow: Args -> init_db (optional) -> Orchestrator -> execute -> (promote) -> Summary on stdout
# Exit codes: 0 success, 1 failure, 2 halted for review (REQUIRES_REVIEW)

"""
Run an HTS import from the command line.

Examples:
    python scripts/run_import.py --latest --init-db
    python scripts/run_import.py --version 2025_revision_3
    python scripts/run_import.py --import-id 12 --promote --override --actor ops@example.com
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.config import settings  # noqa: E402
from db.payloads import ImportStatus  # noqa: E402
from db.repositories import HtsRepository  # noqa: E402
from db.session import get_session_factory, init_db  # noqa: E402
from services.import_orchestrator import create_import_orchestrator  # noqa: E402

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


def _run_summary(run) -> Dict[str, Any]:
    metadata = run.metadata_ or {}
    return {
        "importId": run.id,
        "version": run.source_version,
        "status": run.status,
        "checkpoint": run.checkpoint,
        "diffSummary": metadata.get("diffSummary"),
        "validationSummary": metadata.get("validationSummary"),
        "error": run.error_message,
    }


def check_updates(db) -> Dict[str, Any]:
    """
    Compare the active schedule version with what USITC publishes.
    """
    orchestrator = create_import_orchestrator(db)
    active = HtsRepository(db).active_versions()
    if not active:
        latest = orchestrator.fetcher.find_latest_version()
        return {"current": None, "available": True, "latest": latest["version"], "url": latest["url"]}
    result = orchestrator.fetcher.check_for_updates(active[-1])
    return {"current": active[-1], **result}


def run_import(db, version: Optional[str], import_id: Optional[int], started_by: str):
    """
    Create a new run (or load an existing one) and execute it up to the review halt.
    """
    orchestrator = create_import_orchestrator(db)
    if import_id is None:
        run = orchestrator.create_import(version, started_by=started_by)
        import_id = run.id
        logger.info(f"Created import {import_id} for {run.source_version}")
    return orchestrator.execute(import_id)


def promote_import(db, import_id: int, override: bool, actor: str):
    orchestrator = create_import_orchestrator(db)
    return orchestrator.promote(import_id, validation_override=override, actor=actor)


def main():
    """
    Main CLI function.
    """
    parser = argparse.ArgumentParser(description='Import a USITC HTS schedule version')
    target = parser.add_mutually_exclusive_group()
    target.add_argument('--version', help='Schedule version, e.g. 2025_revision_3')
    target.add_argument('--latest', action='store_true', help='Import the latest published version')
    target.add_argument('--import-id', type=int, help='Resume an existing import run')
    parser.add_argument('--check-updates', action='store_true', help='Only report whether a newer version exists')
    parser.add_argument('--promote', action='store_true', help='Promote after a successful run')
    parser.add_argument('--override', action='store_true', help='Promote even if the validation gate fails')
    parser.add_argument('--actor', default='cli', help='Actor recorded on the run')
    parser.add_argument('--init-db', action='store_true', help='Create tables before running')

    args = parser.parse_args()

    if args.init_db:
        init_db()

    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        if args.check_updates:
            print(json.dumps(check_updates(db), indent=2))
            return 0

        run = run_import(db, args.version, args.import_id, args.actor)
        if args.promote and run.status in (ImportStatus.STAGED_READY.value, ImportStatus.REQUIRES_REVIEW.value):
            run = promote_import(db, run.id, args.override, args.actor)

        print(json.dumps(_run_summary(run), indent=2, default=str))
        if run.status == ImportStatus.REQUIRES_REVIEW.value:
            logger.warning(f"Import {run.id} requires review before promotion")
            return 2
        return 0

    except Exception as e:
        logger.error(f"Import failed: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
