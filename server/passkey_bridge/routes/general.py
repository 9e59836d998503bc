"""General application routes."""
from __future__ import annotations

from flask import jsonify

from ..config import app, get_services
from ..errors import CeremonyError
from ..sessions import current_session_id, forget_session_id


@app.errorhandler(CeremonyError)
def handle_ceremony_error(exc: CeremonyError):
    if exc.status_code >= 500:
        app.logger.error("Ceremony failed (%s): %s", exc.kind, exc.message)
    elif exc.status_code == 401:
        app.logger.warning("Ceremony rejected (%s): %s", exc.kind, exc.message)
    else:
        app.logger.info("Ceremony rejected (%s): %s", exc.kind, exc.message)
    return jsonify(exc.to_json()), exc.status_code


@app.route("/session", methods=["GET"])
def session_status():
    identifier = current_session_id()
    challenge_session = (
        get_services().sessions.get(identifier, create=False) if identifier else None
    )
    if challenge_session is None or not challenge_session.logged_in:
        return jsonify({"loggedIn": False, "identity": None})
    return jsonify({"loggedIn": True, "identity": challenge_session.identity.to_json()})


@app.route("/logout", methods=["POST"])
def logout():
    identifier = forget_session_id()
    if identifier:
        get_services().sessions.discard(identifier)
        app.logger.info("Session %s logged out", identifier[:8])
    return jsonify({"success": True})


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})
