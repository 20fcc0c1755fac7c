import os
import shutil
import tempfile
from pathlib import Path

import pytest

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="chunkdrop-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{(_TEST_ROOT / 'chunkdrop.db').as_posix()}")
os.environ.setdefault("UPLOAD_DIR", str(_TEST_ROOT / "uploads"))
os.environ.setdefault("STORAGE_ROOT", str(_TEST_ROOT / "data"))
os.environ.setdefault("HANDOFF_RETRY_BACKOFF_SECONDS", "0")

from chunkdrop.config import settings  # noqa: E402
from chunkdrop.db import Base, create_schema, engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_state():
    Base.metadata.drop_all(bind=engine)
    create_schema()
    shutil.rmtree(Path(settings.upload_dir), ignore_errors=True)
    shutil.rmtree(Path(settings.storage_root), ignore_errors=True)
    yield


@pytest.fixture
def blob_root() -> Path:
    return Path(settings.storage_root) / settings.bucket
