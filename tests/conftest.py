# WORKFLOW: Shared fixtures for the HTS import pipeline test suite.
# Used by: All test modules
# Fixtures:
# 1. db - Fresh sqlite schema per test (drop_all/create_all) and a session
# 2. make_entry - Factory for production hts rows
# 3. make_run - Factory for import runs with optional metadata/checkpoint
# 4. storage - LocalStorage rooted in a temporary directory
#
# Test database: sqlite file next to the suite, recreated for every test.

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db.models import Base, HtsEntry, ImportRun
from storage.local import LocalStorage

# Test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_entry(db):
    def _make(code, version="2024_revision_1", is_active=True, **values):
        digits = code.replace(".", "")
        fields = {
            "indent": 0,
            "description": f"Item {code}",
            "chapter": digits[:2],
            "heading": digits[:4] if len(digits) >= 4 else None,
            "subheading": digits[:6] if len(digits) >= 6 else None,
            "statistical_suffix": digits[8:10] if len(digits) == 10 else None,
        }
        fields.update(values)
        entry = HtsEntry(code=code, version=version, source_version=version, is_active=is_active, **fields)
        db.add(entry)
        db.commit()
        return entry

    return _make


@pytest.fixture
def make_run(db):
    def _make(version="2025_revision_1", status="PENDING", metadata=None, checkpoint=None):
        run = ImportRun(
            source_version=version,
            source_url=f"https://example.test/hts_{version}_json.json",
            status=status,
            checkpoint=checkpoint or {},
            import_log=[],
            metadata_=metadata or {},
            started_by="test",
            import_started_at=datetime.utcnow(),
        )
        db.add(run)
        db.commit()
        return run

    return _make


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "raw"))
