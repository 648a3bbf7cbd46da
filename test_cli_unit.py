"""
Unit tests for the threadqa console script.
uvicorn.run is patched out; only argument handling is exercised.
"""
import os
from unittest.mock import patch

import pytest

from threadqa import cli, config


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    for name in ("RUNTIME_URL", "DB_PATH", "SPAWN_RUNTIME", "REPO_DIR"):
        monkeypatch.setattr(config, name, getattr(config, name))
    for var in ("THREADQA_RUNTIME_URL", "THREADQA_DB", "THREADQA_SPAWN_RUNTIME", "THREADQA_REPO_DIR"):
        monkeypatch.delenv(var, raising=False)


def test_defaults_start_uvicorn():
    with patch("threadqa.cli.uvicorn.run") as run:
        cli.main([])
    args, kwargs = run.call_args
    assert args == ("threadqa.main:app",)
    assert kwargs["host"] == config.HOST
    assert kwargs["port"] == config.PORT
    assert kwargs["reload"] is False


def test_overrides_reach_config_and_environment(tmp_path):
    db = str(tmp_path / "qa.db")
    with patch("threadqa.cli.uvicorn.run") as run:
        cli.main([
            "--port", "40000",
            "--runtime-url", "http://10.0.0.5:4096",
            "--db", db,
            "--spawn-runtime", str(tmp_path),
        ])
    assert run.call_args.kwargs["port"] == 40000
    assert config.RUNTIME_URL == "http://10.0.0.5:4096"
    assert config.DB_PATH == db
    assert config.SPAWN_RUNTIME is True
    assert config.REPO_DIR == str(tmp_path)
    assert os.environ["THREADQA_DB"] == db
    assert os.environ["THREADQA_SPAWN_RUNTIME"] == "true"
