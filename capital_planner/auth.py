"""
Capital Planner
Authentication & Authorization Middleware.

Provides:
    - API key authentication via X-API-Key header
    - Role-based access control (RBAC) decorator
    - Content-Type enforcement for state-changing requests
    - ``current_actor()``: the caller identity handed to service calls

Security model:
    - All /api/v1/* endpoints require a valid API key (except /api/v1/health)
    - Write endpoints require at least the 'editor' role; admin-only
      business rules (global criteria, permanent delete) are enforced by
      the services themselves
    - The acting user id comes from the X-User-Id header, stamped on
      scores and audit rows

Configuration (env vars):
    API_KEYS          — comma-separated list of valid API keys
                        e.g. "key1:admin,key2:viewer,key3:editor"
                        Format: "<key>:<role>" where role is admin|editor|viewer
    API_AUTH_ENABLED  — set to "false" to disable auth (development only)
"""

import functools
import logging
import os
from typing import Optional

from flask import current_app, g, jsonify, request

from capital_planner.core.identity import ROLES, Actor

logger = logging.getLogger(__name__)

# Role hierarchy: admin > editor > viewer
ROLE_HIERARCHY = {
    "admin": {"admin", "editor", "viewer"},
    "editor": {"editor", "viewer"},
    "viewer": {"viewer"},
}

_FALSY = ("false", "0", "no", "off")


def _parse_api_keys() -> dict[str, str]:
    """
    Parse API_KEYS env var into {key: role} mapping.

    Keys without a role default to 'viewer'.
    """
    raw = os.getenv("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            key, role = entry.rsplit(":", 1)
            role = role.strip().lower()
            if role not in ROLES:
                logger.warning("Unknown role '%s' for API key, defaulting to 'viewer'", role)
                role = "viewer"
            keys[key.strip()] = role
        else:
            keys[entry] = "viewer"
    return keys


def _is_auth_enabled() -> bool:
    """Env var wins over app config."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in _FALSY
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in _FALSY
    except RuntimeError:
        # Outside app context
        return True


def _get_api_key_from_request() -> Optional[str]:
    return request.headers.get("X-API-Key", "").strip() or None


def _authenticate():
    """Set g.current_user_role; returns an error response or None."""
    if not _is_auth_enabled():
        g.current_user_role = "admin"
        g.api_key = "dev-mode"
        return None

    api_key = _get_api_key_from_request()
    if not api_key:
        return jsonify({"error": "Authentication required. Provide X-API-Key header."}), 401

    api_keys = _parse_api_keys()
    if not api_keys:
        logger.error("API_KEYS env var is not configured but API_AUTH_ENABLED=true")
        return jsonify({"error": "Server authentication not configured"}), 500

    role = api_keys.get(api_key)
    if role is None:
        logger.warning("Invalid API key attempt: %s...", api_key[:8])
        return jsonify({"error": "Invalid API key"}), 401

    g.current_user_role = role
    g.api_key = api_key
    return None


# ── Decorators ───────────────────────────────────────────────────────────────

def require_auth(f):
    """
    Decorator: require a valid API key for the endpoint.

    Sets g.current_user_role to the authenticated role.
    When auth is disabled (development), defaults to 'admin'.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "current_user_role", None) is None:
            error = _authenticate()
            if error is not None:
                return error
        return f(*args, **kwargs)

    return decorated


def require_role(minimum_role: str):
    """
    Decorator: require a minimum role level.

    Usage:
        @require_auth
        @require_role("editor")
        def create_criterion(): ...
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_role = getattr(g, "current_user_role", None)
            if not user_role:
                return jsonify({"error": "Authentication required"}), 401

            allowed = ROLE_HIERARCHY.get(user_role, set())
            if minimum_role not in allowed:
                logger.warning(
                    "Access denied: role '%s' tried to access '%s'-level endpoint %s",
                    user_role, minimum_role, request.path,
                )
                return jsonify({"error": "Insufficient permissions"}), 403

            return f(*args, **kwargs)
        return decorated
    return decorator


def current_actor() -> Actor:
    """Caller identity for service calls: API-key role + X-User-Id header."""
    raw_user = request.headers.get("X-User-Id", "").strip()
    user_id = int(raw_user) if raw_user.isdigit() else None
    return Actor(user_id=user_id, role=getattr(g, "current_user_role", None) or "viewer")


# ── CSRF mitigation ──────────────────────────────────────────────────────────

def _check_content_type():
    """
    State-changing requests with a body must be JSON. HTML forms cannot
    send application/json, which blocks cross-site form posts.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests"
            }), 415
    return None


def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    Skips the health routes and CORS pre-flight requests.
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health" or request.path.startswith("/api/v1/health/"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error
        return _authenticate()

    logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
