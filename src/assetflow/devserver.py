"""Reload channel and a FastAPI dev server with Server-Sent-Events reload."""

from __future__ import annotations

import asyncio
import json
import queue
import socket
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from .log import get_logger
from .model import ReloadMessage

log = get_logger("assetflow.devserver")

RELOAD_PATH = "/__reload"
KEEPALIVE_SECONDS = 15.0
POLL_SECONDS = 0.1

RELOAD_SCRIPT = """<script>
(function () {
  var source = new EventSource("%s");
  source.onmessage = function (event) {
    var msg = JSON.parse(event.data);
    if (msg.status === "succeeded") {
      window.location.reload();
    } else {
      console.error("[assetflow] " + msg.group + " failed:\\n" + msg.errors.join("\\n"));
    }
  };
})();
</script>
""" % RELOAD_PATH


class ReloadChannel:
    """
    In-process pub/sub for reload messages. Every subscriber gets its own
    queue; publishing never blocks.
    """

    def __init__(self, history: int = 50):
        self._lock = threading.Lock()
        self._subscribers: List["queue.Queue[ReloadMessage]"] = []
        self.history: Deque[ReloadMessage] = deque(maxlen=history)

    def publish(self, message: ReloadMessage) -> None:
        with self._lock:
            self.history.append(message)
            subscribers = list(self._subscribers)
        log.info("Reload: %s %s", message.group, message.status)
        for q in subscribers:
            q.put_nowait(message)

    def subscribe(self) -> "queue.Queue[ReloadMessage]":
        q: "queue.Queue[ReloadMessage]" = queue.Queue()
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: "queue.Queue[ReloadMessage]") -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


def inject_reload_script(html: str) -> str:
    idx = html.lower().rfind("</body>")
    if idx == -1:
        return html + RELOAD_SCRIPT
    return html[:idx] + RELOAD_SCRIPT + html[idx:]


def _html_target(root: Path, url_path: str) -> Optional[Path]:
    """The HTML file under root a request path maps to, if any."""
    target = (root / url_path.lstrip("/")).resolve()
    if target != root and root not in target.parents:
        return None
    if target.is_dir():
        target = target / "index.html"
    if target.suffix.lower() in (".html", ".htm") and target.is_file():
        return target
    return None


# -------------------- App --------------------

def create_app(root: str | Path, channel: ReloadChannel, stopping: Optional[threading.Event] = None) -> FastAPI:
    """
    Static files from `root`, HTML pages with the reload script injected, and
    an SSE stream of reload messages at RELOAD_PATH.
    """
    root = Path(root).resolve()
    stopping = stopping or threading.Event()
    app = FastAPI(title="assetflow dev server", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(RELOAD_PATH)
    async def reload_stream() -> StreamingResponse:
        async def events():
            q = channel.subscribe()
            idle = 0.0
            try:
                while not stopping.is_set():
                    try:
                        msg = q.get_nowait()
                    except queue.Empty:
                        await asyncio.sleep(POLL_SECONDS)
                        idle += POLL_SECONDS
                        if idle >= KEEPALIVE_SECONDS:
                            idle = 0.0
                            yield ": ping\n\n"
                        continue
                    idle = 0.0
                    yield f"data: {json.dumps(msg.to_dict())}\n\n"
            finally:
                channel.unsubscribe(q)
                log.debug("Reload client disconnected")

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.middleware("http")
    async def inject_into_html(request: Request, call_next):
        if request.method == "GET":
            target = _html_target(root, request.url.path)
            if target is not None:
                body = inject_reload_script(target.read_text(encoding="utf-8"))
                return HTMLResponse(body, headers={"Cache-Control": "no-cache"})
        return await call_next(request)

    app.mount("/", StaticFiles(directory=str(root), html=True), name="theme")
    return app


# -------------------- Server --------------------

class DevServer:
    """Serves the destination tree with uvicorn and pushes reload messages to browsers."""

    def __init__(self, root: str | Path, channel: ReloadChannel, host: str = "127.0.0.1", port: int = 3000):
        self.root = Path(root).resolve()
        self.channel = channel
        self.host = host
        self.port = port
        self._stopping = threading.Event()
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    def start(self, timeout: float = 5.0) -> "DevServer":
        self.root.mkdir(parents=True, exist_ok=True)
        app = create_app(self.root, self.channel, self._stopping)

        # bind up front so port=0 resolves to a real port before start() returns
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, self.port))
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            app,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=2,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run,
            kwargs={"sockets": [sock]},
            name="assetflow-devserver",
            daemon=True,
        )
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started and time.monotonic() < deadline:
            time.sleep(0.02)
        log.info("Dev server on %s (serving %s)", self.url, self.root)
        return self

    def stop(self) -> None:
        self._stopping.set()
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._server = None
