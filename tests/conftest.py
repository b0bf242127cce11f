import os
import tempfile

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

_workdir = tempfile.mkdtemp(prefix="study-planner-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_workdir, 'test.db')}")
os.environ.setdefault("BLOB_STORAGE_DIR", os.path.join(_workdir, "blobs"))

from app.blobs import FileBlobStore  # noqa: E402
from app.database import Base  # noqa: E402
from app.store import StudyStore  # noqa: E402


@pytest.fixture
def db_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def blob_store(tmp_path):
    return FileBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def store(db_session, blob_store):
    return StudyStore(db_session, blob_store)
