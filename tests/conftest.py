import os
import stat
import sys
import tempfile
from pathlib import Path

import pytest

os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft-codeseek-logs-"))
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from sft_codeseek import CodeSeeker, EngineConfig  # noqa: E402


@pytest.fixture
def fake_ugrep(tmp_path):
    """Write an executable /bin/sh stand-in for ugrep and return its path."""
    counter = {"n": 0}

    def _make(body: str) -> str:
        counter["n"] += 1
        script = tmp_path / f"fake-ugrep-{counter['n']}"
        script.write_text("#!/bin/sh\n" + body + "\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return _make


@pytest.fixture
def make_engine(tmp_path):
    def _make(tool: str = "ugrep-not-installed-for-tests", timeout_s: float = 5.0) -> CodeSeeker:
        return CodeSeeker(EngineConfig(tool=tool, timeout_s=timeout_s, default_root=tmp_path))

    return _make


@pytest.fixture
def engine_with_files(make_engine, monkeypatch):
    """Engine whose discovery returns exactly the given paths, ignoring ugrep."""

    def _make(files, tool: str = "ugrep-not-installed-for-tests") -> CodeSeeker:
        engine = make_engine(tool)
        calls = []

        def _discover(scope):
            calls.append(scope)
            return [Path(f) for f in files][: scope.max_files]

        monkeypatch.setattr(engine, "discover", _discover)
        engine.discover_calls = calls
        return engine

    return _make
