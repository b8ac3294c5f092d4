# localman/routes.py
import logging
from flask import Blueprint, current_app, jsonify, request

from . import relays as relay_service
from .db import isoformat, utcnow
from .errors import ConfigError
from .event_store import Scope
from .utils.broker import CapturedCall

logger = logging.getLogger(__name__)

bp = Blueprint("localman", __name__)

def _services():
    return current_app.extensions["localman"]

def _limit():
    limit = request.args.get("limit", type=int)
    if limit is not None and limit < 1:
        raise ConfigError("limit must be a positive integer")
    return limit

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Request body must be a JSON object")
    return data

def _relay_scope(relay_id: str) -> Scope:
    _services().settings.get_relay(relay_id)
    return Scope.relay(relay_id)

def _project_scope(project_id: str) -> Scope:
    _services().settings.get_project(project_id)
    return Scope.project(project_id)

@bp.route("/", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200

# direct capture

@bp.route("/webhook", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def capture_webhook():
    svc = _services()
    project = svc.settings.get_project(request.args.get("project"))
    entry = {
        "timestamp": isoformat(utcnow()),
        "method": request.method,
        "headers": dict(request.headers),
        "query": {k: v for k, v in request.args.items() if k != "project"},
        "body": request.get_data(as_text=True),
        "ip": request.remote_addr or "unknown",
        "user_agent": request.headers.get("User-Agent", ""),
        "read": False,
    }
    svc.events.append(Scope.project(project.id), entry)
    logger.info("Captured %s webhook for project %s", request.method, project.id)
    return jsonify({"status": "success", "message": "Webhook received"}), 200

@bp.route("/api/projects/<project_id>/webhooks", methods=["GET"])
def list_webhooks(project_id):
    scope = _project_scope(project_id)
    return jsonify({"webhooks": list(_services().events.list(scope, _limit()))}), 200

@bp.route("/api/projects/<project_id>/webhooks/unread", methods=["GET"])
def count_unread_webhooks(project_id):
    scope = _project_scope(project_id)
    return jsonify({"unread": _services().read_state.count_unread(scope)}), 200

@bp.route("/api/projects/<project_id>/webhooks/<record_id>/read", methods=["POST"])
def mark_webhook_read(project_id, record_id):
    scope = _project_scope(project_id)
    return jsonify(_services().read_state.mark_read(scope, record_id)), 200

@bp.route("/api/projects/<project_id>/webhooks/read-all", methods=["POST"])
def mark_all_webhooks_read(project_id):
    scope = _project_scope(project_id)
    return jsonify({"marked": _services().read_state.mark_all_read(scope)}), 200

@bp.route("/api/projects/<project_id>/webhooks", methods=["DELETE"])
def clear_webhooks(project_id):
    scope = _project_scope(project_id)
    return jsonify({"deleted": _services().events.clear(scope)}), 200

# relays

@bp.route("/api/projects/<project_id>/relays", methods=["GET"])
def list_relays(project_id):
    svc = _services()
    svc.settings.get_project(project_id)
    relays = svc.settings.list_relays(project_id)
    return jsonify({"relays": [r.to_dict() for r in relays]}), 200

@bp.route("/api/projects/<project_id>/relays", methods=["POST"])
def create_relay(project_id):
    svc = _services()
    relay = relay_service.create_relay(svc.settings, svc.broker, project_id, _json_body())
    return jsonify(relay.to_dict()), 201

@bp.route("/api/relays/<relay_id>", methods=["GET"])
def get_relay(relay_id):
    relay = _services().settings.get_relay(relay_id)
    data = relay.to_dict()
    data["unread"] = _services().read_state.count_unread(Scope.relay(relay_id))
    return jsonify(data), 200

@bp.route("/api/relays/<relay_id>", methods=["PATCH"])
def update_relay(relay_id):
    relay = relay_service.update_relay(_services().settings, relay_id, _json_body())
    return jsonify(relay.to_dict()), 200

@bp.route("/api/relays/<relay_id>", methods=["DELETE"])
def delete_relay(relay_id):
    svc = _services()
    removed = relay_service.delete_relay(svc.settings, svc.events, relay_id)
    return jsonify({"ok": True, "history_deleted": removed}), 200

@bp.route("/api/relays/<relay_id>/history", methods=["GET"])
def list_history(relay_id):
    scope = _relay_scope(relay_id)
    return jsonify({"history": list(_services().events.list(scope, _limit()))}), 200

@bp.route("/api/relays/<relay_id>/history", methods=["DELETE"])
def clear_history(relay_id):
    scope = _relay_scope(relay_id)
    return jsonify({"deleted": _services().events.clear(scope)}), 200

@bp.route("/api/relays/<relay_id>/unread", methods=["GET"])
def count_unread(relay_id):
    scope = _relay_scope(relay_id)
    return jsonify({"unread": _services().read_state.count_unread(scope)}), 200

@bp.route("/api/relays/<relay_id>/history/<record_id>/read", methods=["POST"])
def mark_read(relay_id, record_id):
    scope = _relay_scope(relay_id)
    return jsonify(_services().read_state.mark_read(scope, record_id)), 200

@bp.route("/api/relays/<relay_id>/history/read-all", methods=["POST"])
def mark_all_read(relay_id):
    scope = _relay_scope(relay_id)
    return jsonify({"marked": _services().read_state.mark_all_read(scope)}), 200

@bp.route("/api/relays/<relay_id>/history/<record_id>/relay-again", methods=["POST"])
def relay_again(relay_id, record_id):
    svc = _services()
    entry = svc.events.get(_relay_scope(relay_id), record_id)
    new_entry = svc.poller.relay_again(relay_id, CapturedCall.from_history(entry))
    return jsonify(new_entry), 200

@bp.route("/api/relays/<relay_id>/poll", methods=["POST"])
def trigger_poll(relay_id):
    result = _services().poller.trigger_poll(relay_id)
    return jsonify(result.to_dict()), 200

@bp.route("/api/poll", methods=["POST"])
def poll_all():
    project_id = request.args.get("project")
    if project_id:
        _services().settings.get_project(project_id)
    results = _services().poller.poll_all(project_id)
    return jsonify({"results": [r.to_dict() for r in results]}), 200
