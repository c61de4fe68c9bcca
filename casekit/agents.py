"""
Virtual agents - AI characters players chat with during a case
"""
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from casekit import db
from casekit.auth import log_audit_event
from casekit.models import Agent, AgentStatus, AgentType
from casekit.services.openai_service import AIServiceError, chat_with_agent
from casekit.utils.http import commit_or_error, json_error, load_or_404, parse_enum, parse_int

agents_bp = Blueprint('agents', __name__)


def apply_agent_fields(agent: Agent, data: dict) -> None:
    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("Agent name is required.")
        agent.name = name
    if "type" in data:
        agent.type = parse_enum(AgentType, data.get("type"), "type")
    if "status" in data:
        agent.status = parse_enum(AgentStatus, data.get("status"), "status")
    if "model" in data:
        agent.model = str(data.get("model") or "").strip()
    if "system_prompt" in data:
        agent.system_prompt = str(data.get("system_prompt") or "")
    if "message_limit" in data:
        agent.message_limit = parse_int(data.get("message_limit"), "message_limit", minimum=0)
    if "typing_delay_ms" in data:
        agent.typing_delay_ms = parse_int(data.get("typing_delay_ms"), "typing_delay_ms", minimum=0)
    if "hints" in data:
        hints = data.get("hints") or []
        if not isinstance(hints, list):
            raise ValueError("hints must be a list")
        agent.hints = [str(h) for h in hints]


@agents_bp.route("/agents", methods=["GET"])
@login_required
def list_agents():
    search = (request.args.get("search") or "").strip()
    query = Agent.query
    if search:
        query = query.filter(Agent.name.ilike(f"%{search}%"))
    agents = query.order_by(Agent.name.asc()).all()
    return jsonify({"ok": True, "agents": [a.to_dict() for a in agents]}), 200


@agents_bp.route("/agents", methods=["POST"])
@login_required
def create_agent():
    payload = request.get_json(silent=True) or {}
    if not str(payload.get("name") or "").strip():
        return json_error("Agent name is required.", 400)

    agent = Agent(hints=[])
    try:
        apply_agent_fields(agent, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    db.session.add(agent)
    err = commit_or_error("create agent")
    if err:
        return err
    return jsonify({"ok": True, "message": "Agent created", "agent": agent.to_dict()}), 201


@agents_bp.route("/agents/<int:agent_id>", methods=["GET"])
@login_required
def get_agent(agent_id):
    agent = load_or_404(Agent, agent_id, "Agent")
    return jsonify({"ok": True, "agent": agent.to_dict()}), 200


@agents_bp.route("/agents/<int:agent_id>", methods=["PUT", "PATCH"])
@login_required
def update_agent(agent_id):
    agent = load_or_404(Agent, agent_id, "Agent")
    payload = request.get_json(silent=True) or {}
    try:
        apply_agent_fields(agent, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    err = commit_or_error("save agent")
    if err:
        return err
    return jsonify({"ok": True, "message": "Agent saved", "agent": agent.to_dict()}), 200


@agents_bp.route("/agents/<int:agent_id>", methods=["DELETE"])
@login_required
def delete_agent(agent_id):
    agent = load_or_404(Agent, agent_id, "Agent")
    name = agent.name
    db.session.delete(agent)
    err = commit_or_error("delete agent")
    if err:
        return err
    log_audit_event("agent_deleted", f"Agent {agent_id} ({name}) deleted")
    return jsonify({"ok": True, "message": "Agent deleted"}), 200


@agents_bp.route("/agents/<int:agent_id>/chat", methods=["POST"])
@login_required
def chat(agent_id):
    """Test conversation from the admin screen."""
    agent = load_or_404(Agent, agent_id, "Agent")
    payload = request.get_json(silent=True) or {}
    message = str(payload.get("message") or "").strip()
    if not message:
        return json_error("Message is required", 400)
    history = payload.get("history") or []
    if not isinstance(history, list):
        return json_error("history must be a list", 400)

    try:
        reply = chat_with_agent(agent, history, message)
    except AIServiceError as e:
        current_app.logger.warning("Agent chat failed agent_id=%s: %s", agent_id, e)
        return json_error(str(e), 502)

    agent.last_interaction = datetime.now(timezone.utc)
    err = commit_or_error("save agent")
    if err:
        return err
    return jsonify({"ok": True, "reply": reply, "agent": agent.to_dict()}), 200
