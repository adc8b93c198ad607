"""HTTP application exposing the video generation API and static pages."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
from typing import Any

from flask import Flask, Response, jsonify, request, send_from_directory

from .dashscope import DashScopeService
from .handlers import HandlerError, VideoHandler
from .models import TaskStore

logger = logging.getLogger(__name__)

ALLOW_METHODS = "GET,POST,PUT,DELETE,OPTIONS"
ALLOW_HEADERS = "*"
EXPOSE_HEADERS = "Content-Length"


def _atoi(text: str) -> int:
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        return 0
    return int(text)


def create_app(handler: VideoHandler, static_dir: str = "static", uploads_dir: str = "uploads") -> Flask:
    """Build the web application around a video handler."""
    static_root = os.path.abspath(static_dir)
    uploads_root = os.path.abspath(uploads_dir)

    app = Flask(__name__, static_folder=None)
    app.json.ensure_ascii = False
    app.json.sort_keys = False

    @app.before_request
    def _preflight() -> Response | None:
        if request.method == "OPTIONS" and request.headers.get("Origin"):
            resp = Response(status=204)
            resp.headers["Access-Control-Allow-Origin"] = "*"
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
            resp.headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS
            return resp
        return None

    @app.after_request
    def _cors(resp: Response) -> Response:
        if request.headers.get("Origin") and request.method != "OPTIONS":
            resp.headers["Access-Control-Allow-Origin"] = "*"
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers["Access-Control-Expose-Headers"] = EXPOSE_HEADERS
        return resp

    @app.errorhandler(HandlerError)
    def _handler_error(exc: HandlerError) -> tuple[Response, int]:
        return jsonify({"error": exc.message}), exc.status

    @app.get("/static/<path:filename>")
    def static_files(filename: str) -> Response:
        return send_from_directory(static_root, filename)

    @app.get("/uploads/<path:filename>")
    def uploaded_files(filename: str) -> Response:
        return send_from_directory(uploads_root, filename)

    def _page(name: str) -> Response:
        return send_from_directory(static_root, name)

    @app.get("/")
    def index() -> Response:
        return _page("index.html")

    @app.get("/video-generation")
    def video_generation_page() -> Response:
        return _page("video-generation.html")

    @app.get("/history")
    def history_page() -> Response:
        return _page("history.html")

    @app.get("/task-detail/<task_id>")
    def task_detail_page(task_id: str) -> Response:
        return _page("task-detail.html")

    @app.post("/api/video/create")
    def create_task() -> Response:
        try:
            payload: Any = json.loads(request.get_data())
        except ValueError as exc:
            raise HandlerError(400, f"请求参数错误: {exc}") from exc
        return jsonify(handler.create_video_task(payload))

    @app.get("/api/video/status/<task_id>")
    def task_status(task_id: str) -> Response:
        return jsonify(handler.get_task_status(task_id))

    @app.get("/api/video/detail/<task_id>")
    def task_detail(task_id: str) -> Response:
        return jsonify(handler.get_task_detail(task_id))

    @app.get("/api/video/history")
    def task_history() -> Response:
        args = request.args
        return jsonify(
            handler.get_task_history(
                page=_atoi(args.get("page", "1")),
                page_size=_atoi(args.get("page_size", "10")),
                task_type=args.get("task_type", ""),
                status=args.get("status", ""),
            )
        )

    @app.delete("/api/video/<task_id>")
    def delete_task(task_id: str) -> Response:
        return jsonify(handler.delete_task(task_id))

    @app.get("/health")
    def health() -> Response:
        return jsonify({"status": "ok", "message": "Bailian video generation service is running"})

    return app


def main(argv: list[str] | None = None) -> None:
    """Start the video generation web service."""
    parser = argparse.ArgumentParser(description="Video generation web service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8082)
    parser.add_argument("--db", default="bailian.db")
    parser.add_argument("--static-dir", default="static")
    parser.add_argument("--uploads-dir", default="uploads")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    store = TaskStore(args.db)
    service = DashScopeService()
    handler = VideoHandler(store, service)
    app = create_app(handler, args.static_dir, args.uploads_dir)

    if not os.environ.get("DASHSCOPE_API_KEY"):
        logger.warning("Warning: DASHSCOPE_API_KEY environment variable is not set")
        logger.warning("Please set it before making API calls: export DASHSCOPE_API_KEY=<your key>")

    os.makedirs(args.static_dir, exist_ok=True)

    logger.info("Starting Bailian video generation service...")
    logger.info("Server will start on http://localhost:%d", args.port)
    logger.info("API endpoints:")
    for line in (
        "  GET  /                     - Home page",
        "  POST /api/video/create    - Create video task",
        "  GET  /api/video/status/:id - Get task status",
        "  GET  /api/video/history   - Get task history",
        "  DELETE /api/video/:id     - Delete task",
        "  GET  /health              - Health check",
    ):
        logger.info(line)

    try:
        app.run(host=args.host, port=args.port, threaded=True)
    finally:
        store.close()


if __name__ == "__main__":
    main()