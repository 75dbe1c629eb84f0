from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def app(tmp_path_factory: pytest.TempPathFactory):
    tmp_dir = tmp_path_factory.mktemp("runtime")
    audio_dir = tmp_dir / "audio"
    audio_dir.mkdir()
    (audio_dir / "hold-music.raw").write_bytes(b"\xff" * 320)
    (audio_dir / "jazz.raw").write_bytes(b"\x7f" * 160)

    # Must be set before the settings cache is populated.
    os.environ["OPENAI_API_KEY"] = "sk-test"
    os.environ["HOLD_MUSIC_DIR"] = str(audio_dir)
    os.environ["PUBLIC_BASE_URL"] = "https://bridge.example.com"

    import importlib

    for module_name in [
        "config.settings",
        "api.dependencies",
        "api.routes",
        "api.twilio_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def settings():
    from config.settings import Settings

    return Settings(_env_file=None, openai_api_key="sk-test")
