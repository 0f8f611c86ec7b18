"""Application entry point for the portal decision service."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping
from uuid import uuid4

from flask import Flask, jsonify, request
from sqlalchemy import text
import structlog

from portal_decisions.config import get_settings
from portal_decisions.db import session_scope
from portal_decisions.decisions import Actor, DecisionWorkflow, SchemaHazard, build_workflows
from portal_decisions.feedback import CollectingFeedback
from portal_decisions.logging_config import configure_logging
from portal_decisions.store import StoreError

ACTOR_HEADER = "X-User-Id"

ROUTE_VARIANTS = {
    "applications": "applications",
    "form-responses": "form_responses",
    "booking-requests": "booking_requests",
}

ERROR_STATUS_CODES = {
    "not_found": 404,
    "access_denied": 403,
    "invalid_decision": 400,
    "already_decided": 409,
    "timeout": 503,
    "schema_hazard": 500,
    "transition_failed": 502,
}

_LOGGING_CONFIGURED = False


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        trace_id = str(uuid4())
        flask_app.logger.exception(
            "Unhandled application error", extra={"trace_id": trace_id}, exc_info=error
        )
        response = jsonify({"error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def _load_version() -> str:
    version_file = Path(__file__).resolve().parent / "VERSION"
    if version_file.exists():
        return version_file.read_text(encoding="utf-8").strip()
    return "unknown"


def _serialise(record: Mapping[str, Any] | None) -> Dict[str, Any] | None:
    if record is None:
        return None
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in record.items()
    }


def _error(code: str, message: str, status: int):
    response = jsonify({"ok": False, "error": code, "message": message})
    response.status_code = status
    return response


def _resolve_workflow(workflows: Mapping[str, DecisionWorkflow], resource: str) -> DecisionWorkflow | None:
    name = ROUTE_VARIANTS.get(resource)
    return workflows.get(name) if name else None


def _current_actor(workflow: DecisionWorkflow) -> Actor | None:
    user_id = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not user_id:
        return None
    profile = workflow.store.get_record("user_profiles", user_id)
    if profile is None:
        return None
    return Actor.from_profile(profile)


def create_app(workflows: Mapping[str, DecisionWorkflow] | None = None) -> Flask:
    """Create and configure the Flask application."""

    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        configure_logging()
        _LOGGING_CONFIGURED = True

    settings = get_settings()
    registry = dict(workflows) if workflows is not None else build_workflows(settings)

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = _load_version()
    flask_app.logger.setLevel("INFO")
    _register_error_handlers(flask_app)

    @flask_app.route("/<resource>/<record_id>/<decision>", methods=["POST"])
    def decide(resource: str, record_id: str, decision: str):
        log = structlog.get_logger().bind(resource=resource, record_id=record_id, decision=decision)
        workflow = _resolve_workflow(registry, resource)
        if workflow is None:
            return _error("unknown_resource", f"Unknown resource '{resource}'.", 404)
        if decision not in workflow.variant.decisions:
            return _error(
                "unknown_decision",
                f"'{decision}' is not a decision for {workflow.variant.plural_label}.",
                404,
            )

        try:
            actor = _current_actor(workflow)
        except ValueError as exc:
            log.warning("actor_role_invalid", error=str(exc))
            return _error("access_denied", "Your account role is not recognised.", 403)
        except StoreError as exc:
            log.error("actor_lookup_failed", error=str(exc))
            return _error("actor_lookup_failed", "We could not verify your account. Please try again.", 503)
        if actor is None:
            return _error("unauthenticated", "Sign in to respond to this request.", 401)

        payload = request.get_json(silent=True) or {}
        notes = payload.get("notes") if isinstance(payload, dict) else None
        if notes is not None and not isinstance(notes, str):
            return _error("invalid_notes", "Notes must be text.", 400)
        if not workflow.variant.notes_field:
            notes = None

        feedback = CollectingFeedback()
        result = workflow.decide(decision, record_id, actor=actor, notes=notes, feedback=feedback)
        body: Dict[str, Any] = {"ok": result.ok, "toasts": feedback.as_list()}

        if result.ok and result.outcome is not None:
            body.update(
                {
                    "status": result.outcome.status,
                    "changed": result.outcome.changed,
                    "write_path": result.outcome.write_path,
                    "record": _serialise(result.record),
                }
            )
            return jsonify(body), 200

        error = result.error
        body["error"] = error.code if error else "decision_error"
        body["message"] = error.message if error else "Unable to record this decision."
        body["retryable"] = bool(error and error.retryable)
        if isinstance(error, SchemaHazard):
            body["remediation"] = error.remediation
        return jsonify(body), ERROR_STATUS_CODES.get(body["error"], 400)

    @flask_app.route("/<resource>", methods=["GET"])
    def list_records(resource: str):
        workflow = _resolve_workflow(registry, resource)
        if workflow is None:
            return _error("unknown_resource", f"Unknown resource '{resource}'.", 404)

        status = request.args.get("status") or None
        limit = request.args.get("limit", type=int)
        try:
            records = workflow.list_records(status=status, limit=limit)
        except ValueError as exc:
            return _error("invalid_status", str(exc), 400)
        return jsonify({"ok": True, "records": [_serialise(record) for record in records]}), 200

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        health: dict[str, object] = {"ok": True}
        health["version"] = flask_app.config.get("APP_VERSION", "unknown")

        try:
            get_settings()
            health["config"] = "valid"
        except Exception as exc:  # pragma: no cover - settings already loaded above
            health["config"] = "invalid"
            health["config_error"] = str(exc)
            health["ok"] = False

        try:
            with session_scope() as session:
                session.execute(text("SELECT 1"))
            health["db"] = "up"
        except Exception as exc:
            health["db"] = "down"
            health["db_error"] = str(exc)
            health["ok"] = False

        status = 200 if health["ok"] else 503
        return jsonify(health), status

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000)
