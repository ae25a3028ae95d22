import sys
from pathlib import Path
import json
import pytest
from pytest_html import extras as html_extras

# Ensure repo root is on sys.path so `import app...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from app.core.config import Settings  # noqa: E402
from app.main import create_app  # noqa: E402

# Stand-in converter: answers --version, records its argv next to itself, finds the
# path after -o and then behaves according to the mode body.
FAKE_PANDOC = """#!/bin/sh
if [ "$1" = "--version" ]; then
  echo "pandoc 3.1.2"
  echo "Features: +server +lua"
  exit 0
fi
printf '%s\\n' "$@" > "{args_file}"
out=""
prev=""
for arg in "$@"; do
  if [ "$prev" = "-o" ]; then out="$arg"; fi
  prev="$arg"
done
{body}
"""

FAKE_MODES = {
    "ok": 'printf "converted by fake pandoc" > "$out"',
    "fail": 'echo "Error at $1: YAML parse exception at line 1, column 1" >&2\nexit 64',
    "silent_fail": "exit 3",
    "slow": "exec sleep 5",
}


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)


def fake_args(pandoc_path) -> list:
    """argv the fake converter received on its last run."""
    return Path(f"{pandoc_path}.args").read_text().splitlines()


@pytest.fixture
def fake_pandoc(tmp_path):
    if sys.platform == "win32":
        pytest.skip("fake converter is a POSIX shell script")

    def make(mode: str = "ok") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / f"pandoc-{mode}"
        path.write_text(FAKE_PANDOC.format(args_file=f"{path}.args", body=FAKE_MODES[mode]))
        path.chmod(0o755)
        return path

    return make


@pytest.fixture
def make_settings(tmp_path, fake_pandoc):
    def make(mode: str = "ok", **overrides) -> Settings:
        values = dict(
            upload_dir=str(tmp_path / "uploads"),
            status_dir=str(tmp_path / "status"),
            pandoc_path=str(fake_pandoc(mode)),
            conversion_timeout_seconds=5,
            cleanup_interval_seconds=3600,
            log_level="WARNING",
        )
        values.update(overrides)
        return Settings(**values)

    return make


@pytest.fixture
def make_client(make_settings):
    """TestClient factory. Clients are entered (lifespan running, background jobs alive) and closed at teardown."""
    clients = []

    def make(mode: str = "ok", **overrides) -> TestClient:
        client = TestClient(create_app(make_settings(mode, **overrides)))
        client.__enter__()
        clients.append(client)
        return client

    yield make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Attach request/response payloads into pytest-html report.

    In tests, store payloads like:
      request_log = {"method": "...", "url": "...", "params": {...}}
      response_log = {"status_code": 200, "json": {...}}
      item._api_logs = [{"title": "...", "request": ..., "response": ...}, ...]
    """
    outcome = yield
    rep = outcome.get_result()

    if rep.when != "call":
        return

    api_logs = getattr(item, "_api_logs", None)
    if not api_logs:
        return

    extras = getattr(rep, "extras", [])

    for entry in api_logs:
        title = entry.get("title", "API Call")
        req = entry.get("request", {})
        res = entry.get("response", {})

        html = f"""
        <div style="font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, 'Liberation Mono', monospace;">
          <h4 style="margin:8px 0;">{title}</h4>

          <details style="margin:6px 0;">
            <summary><b>Request</b></summary>
            <pre style="background:#0b1020;color:#cfe3ff;padding:10px;border-radius:8px;overflow:auto;">{pretty_json(req)}</pre>
          </details>

          <details style="margin:6px 0;">
            <summary><b>Response</b></summary>
            <pre style="background:#0b1020;color:#cfe3ff;padding:10px;border-radius:8px;overflow:auto;">{pretty_json(res)}</pre>
          </details>
        </div>
        """
        extras.append(html_extras.html(html))

    rep.extras = extras
