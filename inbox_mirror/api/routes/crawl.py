"""Routes for starting crawl jobs and polling their status."""
from __future__ import annotations

import logging
from typing import Optional

from flask import Blueprint, current_app, jsonify

from inbox_mirror.crawl.job_tracker import CrawlJobTracker, JobStatus
from inbox_mirror.crawl.pipeline import INBOX_JOB_KEY, CrawlPipeline

logger = logging.getLogger(__name__)

crawl_bp = Blueprint("crawl", __name__, url_prefix="/api")


def _pipeline() -> Optional[CrawlPipeline]:
    return current_app.config.get("CRAWL_PIPELINE")


def _tracker() -> CrawlJobTracker:
    return current_app.config["JOB_TRACKER"]


def _status_payload(status: JobStatus) -> dict:
    payload = status.to_dict()
    payload["abandoned"] = _tracker().is_abandoned(status)
    return payload


def _unavailable():
    return jsonify({"error": "Crawler is not configured (no extractor available)"}), 503


@crawl_bp.route("/chats/<chat_key>/crawl", methods=["POST"])
def start_chat_crawl(chat_key: str):
    """Kick off a background crawl; poll ``crawl-status`` for the result."""
    if chat_key == INBOX_JOB_KEY:
        return jsonify({"error": f"{INBOX_JOB_KEY} is reserved for the inbox sync job"}), 400
    pipeline = _pipeline()
    if pipeline is None:
        return _unavailable()

    status = pipeline.request_crawl(chat_key)
    logger.info("Crawl requested for chat %s", chat_key)
    return jsonify(_status_payload(status)), 202


@crawl_bp.route("/chats/<chat_key>/crawl-status", methods=["GET"])
def chat_crawl_status(chat_key: str):
    return jsonify(_status_payload(_tracker().read(chat_key)))


@crawl_bp.route("/crawl", methods=["POST"])
def start_inbox_sync():
    """Refresh every inbox entry's metadata in the background."""
    pipeline = _pipeline()
    if pipeline is None:
        return _unavailable()

    status = pipeline.request_inbox_sync()
    return jsonify(_status_payload(status)), 202


@crawl_bp.route("/crawl/status", methods=["GET"])
def inbox_sync_status():
    return jsonify(_status_payload(_tracker().read(INBOX_JOB_KEY)))


@crawl_bp.route("/crawl/jobs", methods=["GET"])
def list_jobs():
    """Every job seen since this process started."""
    statuses = sorted(_tracker().snapshot(), key=lambda s: s.transitioned_at or 0.0, reverse=True)
    return jsonify({"jobs": [_status_payload(status) for status in statuses]})
