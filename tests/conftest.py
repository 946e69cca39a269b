import pytest

from data.store import SQLiteStore
from engine.ledger import make_account
from engine.models import SlippageConfig

NOW = 1_700_000_000_000


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "paper.db"))


@pytest.fixture
def account():
    return make_account(10000.0, NOW, SlippageConfig(enabled=False))
