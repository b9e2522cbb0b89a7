"""Routes for browsing mirrored chats and applying operator changes."""
from __future__ import annotations

import logging
import math
from typing import List

from flask import Blueprint, current_app, jsonify, request

from inbox_mirror.data.inbox_store import ChatNotFoundError, ChatStatus, InboxStore

logger = logging.getLogger(__name__)

chats_bp = Blueprint("chats", __name__, url_prefix="/api")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _store() -> InboxStore:
    return current_app.config["INBOX_STORE"]


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    value = int(raw)
    if value < 1:
        raise ValueError(f"{name} must be >= 1")
    return value


def _status_args(name: str) -> List[ChatStatus]:
    return [ChatStatus.parse(raw) for raw in request.args.getlist(name) if raw]


@chats_bp.route("/chats", methods=["GET"])
def list_chats():
    """Paginated chat list.

    Query params: ``page`` (1-based), ``limit``, ``status`` and repeatable
    ``exclude_status``.
    """
    try:
        page = _int_arg("page", 1)
        limit = _int_arg("limit", 10)
        statuses = _status_args("status")
        excluded = _status_args("exclude_status")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    chats, total = _store().list_chats(
        page=page,
        limit=limit,
        status=statuses[0] if statuses else None,
        exclude_statuses=excluded,
    )
    total_pages = math.ceil(total / limit) if total else 0
    return jsonify(
        {
            "data": [chat.to_dict() for chat in chats],
            "meta": {
                "current_page": page,
                "total_pages": total_pages,
                "total_items": total,
                "limit": limit,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }
    )


@chats_bp.route("/chats/<chat_key>", methods=["GET"])
def get_chat(chat_key: str):
    chat = _store().get_chat(chat_key)
    if chat is None:
        return jsonify({"error": "Chat not found"}), 404
    return jsonify(chat.to_dict())


@chats_bp.route("/chats/<chat_key>/status", methods=["PATCH"])
def update_status(chat_key: str):
    payload = request.get_json(silent=True) or {}
    raw_status = payload.get("status")
    if not raw_status:
        return jsonify({"error": "status is required"}), 400
    try:
        status = ChatStatus.parse(raw_status)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    try:
        chat = _store().set_status(chat_key, status)
    except ChatNotFoundError:
        return jsonify({"error": "Chat not found"}), 404

    logger.info("Operator set chat %s status to %s", chat_key, status.value)
    return jsonify(chat.to_dict())


@chats_bp.route("/chats/<chat_key>/clear-notification", methods=["PATCH"])
def clear_notification(chat_key: str):
    try:
        chat = _store().clear_notification(chat_key)
    except ChatNotFoundError:
        return jsonify({"error": "Chat not found"}), 404
    return jsonify(chat.to_dict())


@chats_bp.route("/chats/<chat_key>/messages", methods=["GET"])
def list_messages(chat_key: str):
    store = _store()
    if store.get_chat(chat_key) is None:
        return jsonify({"error": "Chat not found"}), 404

    messages = store.fetch_messages(chat_key)
    response = jsonify({"messages": [message.to_dict() for message in messages]})
    response.headers.update(NO_CACHE_HEADERS)
    return response
