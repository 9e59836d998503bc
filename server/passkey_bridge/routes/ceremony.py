"""Routes for the registration and authentication ceremonies."""
from __future__ import annotations

from typing import Any, Dict, Mapping

from fido2.utils import websafe_encode
from flask import jsonify, request

from ..config import app, get_services
from ..errors import InvalidRequest
from ..sessions import ensure_session_id


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise InvalidRequest("A JSON object body is required.")
    return payload


def _credential_from(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    # Clients post either {"attResp": ...}, {"credential": ...} or the bare credential.
    for key in ("attResp", "credential"):
        candidate = payload.get(key)
        if candidate is not None:
            if not isinstance(candidate, Mapping):
                raise InvalidRequest(f"'{key}' must be a JSON object.")
            return candidate
    if "rawId" in payload or "response" in payload:
        return payload
    raise InvalidRequest("The credential response is missing.")


@app.route("/registration/options", methods=["POST"])
def registration_options():
    payload = _json_body()
    services = get_services()
    coordinator = services.coordinator

    identity = coordinator.resolve_identity(
        payload.get("username"), payload.get("displayName"), create=True
    )
    with services.sessions.locked(ensure_session_id()) as challenge_session:
        options = coordinator.begin_registration(challenge_session, identity)

    return jsonify(options)


@app.route("/registration/verify", methods=["POST"])
def registration_verify():
    credential = _credential_from(_json_body())
    services = get_services()

    with services.sessions.locked(ensure_session_id()) as challenge_session:
        outcome = services.coordinator.complete_registration(challenge_session, credential)

    app.logger.info("Registration verified for %s", outcome.identity.name)
    body: Dict[str, Any] = {
        "verified": True,
        "credentialId": websafe_encode(outcome.record.credential_id),
    }
    if outcome.token is not None:
        body["token"] = outcome.token
    return jsonify(body)


@app.route("/authentication/options", methods=["POST"])
def authentication_options():
    payload = _json_body()
    services = get_services()
    coordinator = services.coordinator

    identity = coordinator.resolve_identity(payload.get("username"))
    with services.sessions.locked(ensure_session_id()) as challenge_session:
        options = coordinator.begin_authentication(challenge_session, identity)

    return jsonify(options)


@app.route("/authentication/verify", methods=["POST"])
def authentication_verify():
    credential = _credential_from(_json_body())
    services = get_services()

    with services.sessions.locked(ensure_session_id()) as challenge_session:
        outcome = services.coordinator.complete_authentication(challenge_session, credential)

    app.logger.info("Authentication verified for %s", outcome.identity.name)
    body: Dict[str, Any] = {
        "verified": True,
        "identity": outcome.identity.to_json(),
    }
    if outcome.token is not None:
        body["token"] = outcome.token
    return jsonify(body)
