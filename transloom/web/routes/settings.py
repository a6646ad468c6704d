"""Settings management API routes."""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

import transloom.config as config
from transloom.config import BUILTIN_PROVIDERS, BUILTIN_PROVIDER_DISPLAY_NAMES, PipelineSettings
from transloom.errors import PersistenceError
from transloom.logger import LOG_MODES, get_logger, set_log_mode

from .jobs import current_orchestrator, error_payload

settings_bp = Blueprint("settings", __name__)
logger = get_logger(__name__)

MASKED_KEY = "********"


def _masked(current_config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the config with API keys hidden."""
    masked = {}
    for key, value in current_config.items():
        if isinstance(value, dict) and value.get("api_key") and value["api_key"] != "YOUR_API_KEY_HERE":
            value = {**value, "api_key": MASKED_KEY}
        masked[key] = value
    return masked


@settings_bp.get("")
def get_settings():
    """Return current configuration with default values merged."""
    current_config = config.load_config(current_orchestrator().store)
    return jsonify({
        "config": _masked(current_config),
        "meta": {
            "builtin_providers": [
                {"id": p, "name": BUILTIN_PROVIDER_DISPLAY_NAMES[p]}
                for p in BUILTIN_PROVIDERS
            ],
            "log_modes": list(LOG_MODES),
        }
    })


@settings_bp.put("")
def update_settings():
    """Update configuration; running jobs keep the settings they started with."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data.get("config"), dict):
        return jsonify({"error": "Request body must contain a 'config' object", "code": "invalid_request"}), 400

    orchestrator = current_orchestrator()
    current_config = config.load_config(orchestrator.store)
    new_config = config.merge_defaults(data["config"], current_config)

    # Keep stored API keys when the client sends back the masked value
    for key, value in new_config.items():
        if isinstance(value, dict) and value.get("api_key") == MASKED_KEY:
            value["api_key"] = current_config.get(key, {}).get("api_key", "")

    log_mode = new_config.get("log_mode", "off")
    if log_mode not in LOG_MODES:
        return jsonify({"error": f"Invalid log_mode '{log_mode}'", "code": "invalid_request"}), 400
    try:
        PipelineSettings.from_config(new_config)
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid pipeline settings: {e}", "code": "invalid_request"}), 400

    try:
        config.save_config(orchestrator.store, new_config)
    except PersistenceError as e:
        logger.error(f"Failed to save settings: {e}")
        return jsonify(error_payload(e)), 503

    set_log_mode(log_mode)
    orchestrator.apply_config(new_config)
    return jsonify({"config": _masked(new_config)})
