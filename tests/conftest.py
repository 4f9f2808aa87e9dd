import asyncio
import pytest
from pathlib import Path


@pytest.fixture(autouse=True)
def temp_config(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    exports_dir = tmp_path / "exports"
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = (
        f"data_dir = \"{data_dir}\"\n"
        f"exports_dir = \"{exports_dir}\"\n"
        f"first_weekday = \"mon\"\n"
        f"reopen_completed = false\n"
        f"reminder_times = {{ weekly = \"Sun 20:00\", monthly = \"1 20:00\", yearly = \"01-01 20:00\" }}\n"
    )
    cfg_path = tmp_path / "config.toml"
    cfg_path.write_text(cfg, encoding="utf-8")
    monkeypatch.setenv("NOTELADDER_CONFIG", str(cfg_path))
    yield
    monkeypatch.delenv("NOTELADDER_CONFIG", raising=False)


@pytest.fixture
def run_async():
    def _run(coro):
        return asyncio.run(coro)
    return _run


@pytest.fixture
def settings():
    from noteladder.config import load_settings
    return load_settings()


@pytest.fixture
def store(settings):
    """
    Engine + session factory on the temp DB. Use inside a single run_async call
    and dispose the engine at the end of it.
    """
    from noteladder.db import make_engine
    eng, sf = make_engine(settings.db_path)
    return eng, sf
