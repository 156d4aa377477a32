"""Shared fixtures for browser-netcap integration tests.

These fixtures launch a real headless Chromium via Patchright with a remote
debugging port, serve a few pages from a local HTTP server, and run the
daemon in-process against that browser.
"""

from __future__ import annotations

import functools
import http.server
import socket
import tempfile
import threading
from pathlib import Path

import pytest
from patchright.async_api import async_playwright

from browser_netcap.config import BrowserEndpointConfig, NetcapConfig
from browser_netcap.server import NetcapDaemon

# ---------------------------------------------------------------------------
# Test site
# ---------------------------------------------------------------------------

INDEX_HTML = """<html><body>
<h1>netcap</h1>
<script>
  fetch('/api/data.json').then(r => r.json()).then(d => { document.title = 'loaded'; });
</script>
</body></html>"""

FAILING_HTML = """<html><body>
<script>
  fetch('http://127.0.0.1:{dead_port}/unreachable').catch(() => { document.title = 'failed'; });
</script>
</body></html>"""


def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def site_url(tmp_path: Path):
    """Serve a small static site from tmp_path on a background thread."""
    (tmp_path / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    failing = FAILING_HTML.replace("{dead_port}", str(_free_port()))
    (tmp_path / "failing.html").write_text(failing, encoding="utf-8")
    (tmp_path / "api").mkdir()
    (tmp_path / "api" / "data.json").write_text('{"users": [1, 2, 3]}', encoding="utf-8")

    handler = functools.partial(http.server.SimpleHTTPRequestHandler, directory=str(tmp_path))
    httpd = http.server.ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()


# ---------------------------------------------------------------------------
# Browser + daemon
# ---------------------------------------------------------------------------


@pytest.fixture
async def browser():
    """Launch headless Chromium with a remote debugging port."""
    port = _free_port()
    async with async_playwright() as p:
        instance = await p.chromium.launch(
            headless=True,
            chromium_sandbox=False,
            args=[f"--remote-debugging-port={port}"],
        )
        try:
            yield instance, port
        finally:
            await instance.close()


@pytest.fixture
async def daemon(browser, monkeypatch: pytest.MonkeyPatch):
    """Run a NetcapDaemon in-process against the launched browser."""
    _, port = browser
    home = Path(tempfile.mkdtemp(prefix="nc-"))
    monkeypatch.setattr(Path, "home", lambda: home)

    config = NetcapConfig(browser=BrowserEndpointConfig(port=port))
    d = NetcapDaemon(config, socket_path=home / "d.sock")
    await d.start()
    try:
        yield d
    finally:
        await d.shutdown()

