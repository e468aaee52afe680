"""Tiny Flask server exposing the active job's progress."""

from html import escape

from flask import Flask, jsonify

from hlsgrab.session import DownloadSession


def create_app(session: DownloadSession) -> Flask:
    app = Flask(__name__)

    @app.get("/")
    def index():
        handle = session.current
        if handle is None:
            return "<h3>hlsgrab</h3><p>No download running.</p>"
        snap = handle.channel.snapshot()
        return (
            "<h3>hlsgrab</h3>"
            f"<p>{escape(handle.url)}</p>"
            f"<p>{escape(snap.status)} ({snap.fraction * 100:.1f}%)</p>"
            "<p>Progress JSON: <a href='/progress' target='_blank'>/progress</a></p>"
        )

    @app.get("/progress")
    def progress():
        handle = session.current
        if handle is None:
            return jsonify({"error": "no download"}), 404
        body = {"url": handle.url, "done": handle.done, **handle.channel.snapshot().to_dict()}
        if handle.outcome is not None:
            body["ok"] = handle.outcome.ok
            body["message"] = handle.outcome.message
        return jsonify(body)

    @app.post("/cancel")
    def cancel():
        if not session.cancel():
            return jsonify({"cancelled": False, "error": "no active download"}), 409
        return jsonify({"cancelled": True})

    return app


def start_progress_server(session: DownloadSession, host: str = "127.0.0.1", port: int = 5000) -> None:
    # Blocking call; intended to run in a daemon thread
    create_app(session).run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
