from __future__ import annotations

import argparse
import asyncio
import logging
import os
import socket
import sys
import time
import webbrowser
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from starlette.responses import Response
from starlette.websockets import WebSocketDisconnect, WebSocketState

from livepreview.compiler import Compiler, typst_available
from livepreview.config import Settings
from livepreview.errors import PathBlockedError, RegistryClosed, StartupFailure
from livepreview.logs import _log, configure_logging
from livepreview.paths import guess_media_type, resolve_asset
from livepreview.registry import ConnState
from livepreview.server import PreviewServer
from livepreview.watcher import check_watch_root

__version__ = "0.3.0"

VERSION_HEADER = "X-Artifact-Version"
DIGEST_HEADER = "X-Artifact-Digest"
NO_CACHE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _preview(request: Request) -> PreviewServer:
    return request.app.state.preview


############################
# Artifact + assets
############################
files = APIRouter()


@files.get("/", include_in_schema=False)
def current_artifact(request: Request):
    art = _preview(request).trigger.current()
    if not art.ready:
        err = _preview(request).trigger.last_error
        raise_api_error("No artifact compiled yet", status_code=503, data={"last_error": err})
    headers = {VERSION_HEADER: str(art.version), DIGEST_HEADER: art.digest, **NO_CACHE}
    return Response(art.data, media_type=art.media_type, headers=headers)


def _serve_asset(request: Request, rel: str):
    srv = _preview(request)
    try:
        p = resolve_asset(srv.target.root, rel, srv.target.extensions)
    except PathBlockedError as e:
        _log("http", f"[http] blocked asset path={rel!r} reason={e.reason}", logging.WARNING)
        raise_api_error("Invalid path", status_code=400, data={"reason": e.reason})
    if p is None:
        raise_api_error("Not found", status_code=404)
    return FileResponse(str(p), media_type=guess_media_type(p), headers=dict(NO_CACHE))


@files.get("/assets/{full_path:path}")
def serve_asset(full_path: str, request: Request):
    # full_path is relative to the watch root
    return _serve_asset(request, full_path)


_VIEWER = """<!doctype html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
  html, body {{ margin: 0; height: 100%; background: #525659; }}
  #view {{ border: 0; width: 100%; height: 100%; display: block; }}
  img#view {{ width: auto; height: auto; max-width: 100%; margin: 0 auto; }}
</style>
</head>
<body>
{element}
<script>
  (function () {{
    var view = document.getElementById("view");
    var scheme = location.protocol === "https:" ? "wss://" : "ws://";
    var seen = {version};
    function connect() {{
      var ws = new WebSocket(scheme + location.host + "/reload");
      ws.onmessage = function (ev) {{
        var msg = JSON.parse(ev.data);
        if (msg.version > seen) {{
          seen = msg.version;
          view.src = "/?v=" + seen;
        }}
      }};
      ws.onclose = function () {{ setTimeout(connect, 1000); }};
    }}
    connect();
  }})();
</script>
</body>
</html>
"""


@files.get("/preview", include_in_schema=False)
def viewer(request: Request):
    srv = _preview(request)
    art = srv.trigger.current()
    src = f"/?v={art.version}"
    if art.media_type.startswith("image/"):
        dims = f' width="{art.size[0]}" height="{art.size[1]}"' if art.size else ""
        element = f'<img id="view" src="{src}"{dims} alt="preview">'
    else:
        element = f'<iframe id="view" src="{src}"></iframe>'
    html = _VIEWER.format(title=srv.settings.source_path.name, element=element, version=art.version)
    return HTMLResponse(html, headers=dict(NO_CACHE))


############################
# Reload channel
############################
async def _client_gone(ws: WebSocket) -> None:
    while True:
        msg = await ws.receive()
        if msg.get("type") == "websocket.disconnect":
            return


@files.websocket("/reload")
async def reload_channel(ws: WebSocket):
    srv: PreviewServer = ws.app.state.preview
    registry = srv.registry
    try:
        cid = registry.register()
    except RegistryClosed:
        await ws.close(code=1001)
        return
    state = ConnState.CLOSED_BY_CLIENT
    reader: Optional[asyncio.Task] = None
    try:
        await ws.accept()
        reader = asyncio.create_task(_client_gone(ws))
        while True:
            getter = asyncio.ensure_future(registry.receive(cid))
            done, _ = await asyncio.wait({getter, reader}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                state = ConnState.CLOSED_BY_CLIENT
                break
            msg = getter.result()
            if msg is None:
                # Hang-up request: shutdown or a stuck connection.
                state = registry.state_of(cid) or ConnState.CLOSED_BY_SERVER
                if ws.client_state == WebSocketState.CONNECTED:
                    await ws.close(code=1001)
                break
            try:
                await asyncio.wait_for(ws.send_json(msg), timeout=srv.settings.send_timeout)
            except (asyncio.TimeoutError, WebSocketDisconnect, RuntimeError, OSError) as e:
                _log("clients", f"[clients] send failed id={cid} err={e!r}", logging.WARNING)
                state = ConnState.FAILED
                break
    except WebSocketDisconnect:
        state = ConnState.CLOSED_BY_CLIENT
    finally:
        if reader is not None:
            if reader.done() and not reader.cancelled():
                reader.exception()
            reader.cancel()
        registry.unregister(cid, state)


############################
# Core API
############################
api = APIRouter(prefix="/api")


@api.get("/health")
def health(request: Request):
    srv = _preview(request)
    return {
        "ok": True,
        "time": time.time(),
        "uptime": max(0.0, time.time() - float(request.app.state.started_at)),
        "root": str(srv.target.root),
        "typst": typst_available(srv.settings.typst),
        "version": __version__,
        "pid": os.getpid(),
    }


@api.get("/status")
def status(request: Request):
    return api_success(_preview(request).status())


@api.get("/asset")
def asset_get(request: Request, path: str = Query(...)):
    return _serve_asset(request, path)


############################
# App factory
############################
@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    srv: PreviewServer = app_obj.state.preview
    _log("http", f"[startup] root={srv.target.root} source={srv.settings.source_path}")
    await srv.start()
    try:
        yield
    finally:
        await srv.stop()


async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        payload = exc.detail
        return JSONResponse(payload, status_code=exc.status_code, headers=dict(NO_CACHE))
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


def create_app(settings: Optional[Settings] = None, compiler: Optional[Compiler] = None) -> FastAPI:
    """Build the ASGI app. Also usable as ``uvicorn app:create_app --factory``."""
    settings = settings or Settings.from_env()
    app = FastAPI(title="Live Preview", version=__version__, lifespan=lifespan)
    app.state.preview = PreviewServer(settings, compiler=compiler)
    app.state.started_at = time.time()
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.include_router(api)
    app.include_router(files)
    return app


############################
# Entry point
############################
def _bind(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        raise StartupFailure(f"cannot bind {host}:{port}: {e.strerror or e}") from e
    sock.listen(128)
    sock.set_inheritable(True)
    return sock


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Watch a document, recompile on change and live-reload the browser preview")
    ap.add_argument("source", nargs="?", help="document to compile (or PREVIEW_SOURCE)")
    ap.add_argument("-o", "--output", help="artifact path (default: source with .pdf suffix)")
    ap.add_argument("--root", help="directory to watch (default: the source's directory)")
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None, help="0 picks a free port")
    ap.add_argument("--debounce-ms", type=int, default=None)
    ap.add_argument("--font-path", action="append", default=None, dest="font_paths")
    ap.add_argument("--ppi", type=float, default=None)
    ap.add_argument("--no-watch", action="store_true", help="compile once and serve without watching")
    ap.add_argument("--open", action="store_true", help="open the preview in the default browser")
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    try:
        import uvicorn
    except Exception:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        return 1
    try:
        settings = Settings.from_env(
            source=args.source,
            output=args.output,
            root=args.root,
            host=args.host,
            port=args.port,
            debounce_ms=args.debounce_ms,
            font_paths=args.font_paths,
            ppi=args.ppi,
            watch=False if args.no_watch else None,
            open_browser=True if args.open else None,
        )
    except Exception as e:  # pydantic ValidationError, or no source given at all
        sys.stderr.write(f"[app] invalid settings: {e}\n")
        return 1
    try:
        check_watch_root(settings.root_path)
        sock = _bind(settings.host, settings.port)
    except StartupFailure as e:
        logging.getLogger("livepreview").error("startup failed: %s", e)
        return 1
    host, port = sock.getsockname()[:2]
    url = f"http://{settings.host}:{port}/preview"
    _log("http", f"[startup] listening on {host}:{port}; preview at {url}")
    if settings.open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error as e:
            _log("http", f"[startup] could not open browser: {e}", logging.WARNING)
    server = uvicorn.Server(uvicorn.Config(create_app(settings), log_level="warning", lifespan="on"))
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()
    if not server.started:
        logging.getLogger("livepreview").error("startup failed; see errors above")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
