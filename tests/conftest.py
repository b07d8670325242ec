import pytest

from reviewpipe import storage


@pytest.fixture(autouse=True)
def home(tmp_path, monkeypatch):
    """Every test gets its own database under a temp REVIEWPIPE_HOME."""
    monkeypatch.setenv("REVIEWPIPE_HOME", str(tmp_path))
    storage.close_conn()
    yield tmp_path
    storage.close_conn()
