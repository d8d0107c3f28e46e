#!/usr/bin/env python3
"""
Flask API over yt-dlp.

Endpoints:
  - GET  /                       -> banner
  - GET  /health                 -> liveness, yt-dlp version, activity counters
  - POST /api/info               -> {"type": "video"|"playlist", "data": {...}}
  - POST /api/download           -> unified; body {"url", "type", "quality"}
  - POST /api/download/video     -> single video (mp4)
  - POST /api/download/audio     -> audio only (mp3)
  - POST /api/download/playlist  -> whole playlist into its own folder
  - POST /api/formats            -> quality menu + yt-dlp -F listing
  - GET  /api/downloads-path     -> where files land
  - GET  /downloads/<name>       -> completed artifacts

Notes:
  - Requests run on Werkzeug threads; each download blocks only its own.
  - Duplicate downloads of one URL queue behind each other.
  - Errors come back as {"error": "..."} with a non-2xx status.
"""

from __future__ import annotations

import atexit
import logging
import platform
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from yt_dlp.version import __version__ as YTDLP_VERSION

from ytgrab.config import Settings
from ytgrab.errors import FetchError, MissingInput
from ytgrab.orchestrator import Orchestrator, TargetKind

# Rate limiting per IP address; limit strings come from Settings
limiter = Limiter(get_remote_address, storage_uri="memory://")

api = Blueprint("api", __name__)


def _orchestrator() -> Orchestrator:
    return current_app.extensions["ytgrab"]


def _limit(name: str):
    """Limit string resolved per request from the running app's settings."""
    return lambda: _orchestrator().settings.rate_limits[name]


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise MissingInput("URL is required")
    return data


@api.get("/")
def index():
    return jsonify(
        message="YouTube Downloader API Server is running!",
        port=_orchestrator().settings.port,
    )


@api.get("/health")
@limiter.limit(_limit("health"))
def health():
    return jsonify(ok=True, ytdlp_version=YTDLP_VERSION, **_orchestrator().health())


@api.post("/api/info")
@limiter.limit(_limit("info"))
def api_info():
    return jsonify(_orchestrator().info(_body().get("url")))


@api.post("/api/download")
@limiter.limit(_limit("download"))
def api_download():
    """
    POST /api/download
    Body: {"url": "...", "type": "video"|"audio"|"playlist", "quality": "720p"}
    """
    data = _body()
    return jsonify(_orchestrator().download(
        data.get("url"), TargetKind.parse(data.get("type")), data.get("quality"),
    ))


@api.post("/api/download/video")
@limiter.limit(_limit("download"))
def api_download_video():
    data = _body()
    return jsonify(_orchestrator().download(data.get("url"), TargetKind.SINGLE, data.get("quality")))


@api.post("/api/download/audio")
@limiter.limit(_limit("download"))
def api_download_audio():
    data = _body()
    return jsonify(_orchestrator().download(data.get("url"), TargetKind.AUDIO))


@api.post("/api/download/playlist")
@limiter.limit(_limit("download"))
def api_download_playlist():
    data = _body()
    return jsonify(_orchestrator().download(data.get("url"), TargetKind.COLLECTION, data.get("quality")))


@api.post("/api/formats")
@limiter.limit(_limit("info"))
def api_formats():
    return jsonify(_orchestrator().list_formats(_body().get("url")))


@api.get("/api/downloads-path")
def api_downloads_path():
    return jsonify(
        downloadsPath=str(_orchestrator().settings.downloads_dir),
        platform=platform.system().lower(),
        homeDir=str(Path.home()),
    )


@api.get("/downloads/<path:filename>")
def serve_download(filename: str):
    return send_from_directory(_orchestrator().settings.downloads_dir, filename)


@api.app_errorhandler(FetchError)
def handle_fetch_error(e: FetchError):
    current_app.logger.warning("%s: %s", e.kind, e.message)
    return jsonify(error=e.message), e.status


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Flask:
    settings = settings or (orchestrator.settings if orchestrator else Settings.from_env())
    settings.ensure_dirs()

    app = Flask(__name__)
    app.config.setdefault("RATELIMIT_DEFAULT", settings.rate_limits["default"])
    app.config.update(config or {})
    CORS(app)  # Allow all origins

    app.extensions["ytgrab"] = orchestrator or Orchestrator(settings)
    limiter.init_app(app)
    app.register_blueprint(api)

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        app.logger.exception("Unhandled error: %s", e)
        return jsonify(error=str(e)), 500

    app.logger.info("Downloads directory: %s", settings.downloads_dir)
    return app


def main() -> int:
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    app = create_app(settings)
    atexit.register(app.extensions["ytgrab"].shutdown)

    # threaded=True lets other requests in while a download is running
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
