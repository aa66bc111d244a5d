"""
pytest configuration for the CNAB pipeline tests.

Adds src directory to Python path for imports and provides shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))

from cnab_ingest.checkpoint import CheckpointManager  # noqa: E402
from cnab_ingest.db import Database  # noqa: E402
from cnab_ingest.line_processor import LineProcessor  # noqa: E402
from cnab_ingest.persistence import UploadRepository  # noqa: E402
from cnab_ingest.queue.memory import InMemoryUploadQueue  # noqa: E402
from cnab_ingest.storage import LocalObjectStorage  # noqa: E402
from cnab_ingest.upload_processor import ParallelUploadProcessor  # noqa: E402


def make_line(
    nature: str = "3",
    date: str = "20190301",
    amount_cents: int = 14200,
    cpf: str = "09620676017",
    card: str = "4753****3153",
    time: str = "153453",
    owner: str = "JOÃO MACEDO",
    store: str = "BAR DO JOÃO",
) -> str:
    """Build an 80-character CNAB line."""
    line = (
        nature
        + date
        + str(amount_cents).zfill(10)
        + cpf
        + card
        + time
        + owner.ljust(14)[:14]
        + store.ljust(18)[:18]
    )
    assert len(line) == 80
    return line


@pytest.fixture
def sample_line() -> str:
    return make_line()


@pytest.fixture
def sample_lines() -> list[str]:
    return [
        make_line(nature="3", amount_cents=14200),
        make_line(nature="5", amount_cents=13200, cpf="55641815063"),
        make_line(nature="1", amount_cents=15200, card="1234****7890"),
    ]


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'cnab.db'}")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def repository(database) -> UploadRepository:
    return UploadRepository(database)


@pytest.fixture
def memory_queue() -> InMemoryUploadQueue:
    return InMemoryUploadQueue()


@pytest.fixture
def storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "storage")


@pytest.fixture
def upload_processor(repository) -> ParallelUploadProcessor:
    async def no_sleep(delay):
        pass

    return ParallelUploadProcessor(
        LineProcessor(repository, sleep=no_sleep),
        CheckpointManager(repository),
        parallel_workers=2,
        checkpoint_interval=2,
    )
