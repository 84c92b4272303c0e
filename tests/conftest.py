import pytest

from pagerank import _ENV_FIELDS


@pytest.fixture(autouse=True)
def clean_pagerank_env(monkeypatch):
    for name in _ENV_FIELDS:
        monkeypatch.delenv(name, raising=False)
