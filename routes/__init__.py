"""Blueprint registration and service heartbeat routes."""
from flask import Blueprint, jsonify

from .admin import admin_bp
from .auth import auth_bp
from .manifestations import manifestations_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/api/v1/status", methods=["GET"])
def status():
    """Heartbeat used by offline clients to decide whether to replay their queue."""
    return jsonify({"status": "online", "service": "Participa DF API"})


@main_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "healthy"})


__all__ = ["main_bp", "auth_bp", "admin_bp", "manifestations_bp"]
