"""
Shared test fixtures for journey-core.

Provides:
- Temporary config files pointing at a fake TfL server
- A running journey-core server for E2E tests
"""

import socket
import time
from threading import Thread

import httpx
import pytest
import uvicorn


@pytest.fixture()
def config_file(httpserver, tmp_path):
    """
    Write a temporary config.yaml that points at the fake TfL server
    (pytest-httpserver's `httpserver`). Returns the path.
    """
    base_url = httpserver.url_for("").rstrip("/")
    content = f"""\
tfl_base_url: "{base_url}"
request_timeout: 5
max_snapshot_age: 120
status_modes:
  - tube
"""
    path = tmp_path / "config.yaml"
    path.write_text(content)
    return str(path)


@pytest.fixture()
def journey_core_url(config_file, monkeypatch):
    """
    Start the journey-core FastAPI app on a free port.
    Yields the base URL and shuts the server down afterwards.
    """
    monkeypatch.setenv("CONFIG_PATH", config_file)
    monkeypatch.delenv("API_KEY", raising=False)

    from journey_core.app import app

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]

    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = Thread(target=server.run, daemon=True)
    thread.start()

    base_url = f"http://127.0.0.1:{port}"
    for _ in range(50):
        try:
            httpx.get(f"{base_url}/health", timeout=0.5)
            break
        except httpx.ConnectError:
            time.sleep(0.1)
    else:
        pytest.fail("journey-core server did not start in time")

    yield base_url

    server.should_exit = True
    thread.join(timeout=5)
