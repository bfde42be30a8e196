"""
TestMaster AI
Navigation Blueprint — browser page routes and the navigation API.

Every page is the same SPA shell; the server only decides whether the
current user may open it.

Pages:
    GET /                   — authenticated users
    GET /plans              — manage_plans
    GET /cases              — manage_cases
    GET /executions         — manage_executions
    GET /ai-generator       — use_ai
    GET /history            — view_reports
    GET /reports            — view_reports
    GET /model-control      — admin role
    GET /user-management    — manage_users
    GET /login              — public

Anonymous page loads redirect to /login, denied ones to the page's
redirect target (302).

API:
    GET /api/v1/navigation  — pages the current user may open
"""

import logging
from dataclasses import dataclass

from flask import Blueprint, current_app, g, jsonify, redirect, send_from_directory

from testmaster.middleware.permission_required import current_permissions

logger = logging.getLogger(__name__)

navigation_bp = Blueprint("navigation", __name__)

LOGIN_PATH = "/login"


@dataclass(frozen=True)
class BrowserRoute:
    path: str
    label: str
    permission: str | None = None
    role: str | None = None
    redirect_to: str = "/"

    def allows(self, resolved) -> bool:
        if self.role == "admin":
            return resolved.is_admin()
        if self.role == "master":
            return resolved.is_master()
        if self.permission:
            return resolved.has_permission(self.permission)
        return True


BROWSER_ROUTES = (
    BrowserRoute("/", "Dashboard"),
    BrowserRoute("/plans", "Test Plans", permission="manage_plans"),
    BrowserRoute("/cases", "Test Cases", permission="manage_cases"),
    BrowserRoute("/executions", "Test Executions", permission="manage_executions"),
    BrowserRoute("/ai-generator", "AI Generator", permission="use_ai"),
    BrowserRoute("/history", "History", permission="view_reports"),
    BrowserRoute("/reports", "Reports", permission="view_reports"),
    BrowserRoute("/model-control", "Model Control", role="admin"),
    BrowserRoute("/user-management", "User Management", permission="manage_users"),
)

_ROUTES_BY_PATH = {route.path: route for route in BROWSER_ROUTES}


def _shell():
    return send_from_directory(current_app.template_folder, "index.html")


def _page(path: str):
    route = _ROUTES_BY_PATH[path]
    if getattr(g, "user_id", None) is None:
        return redirect(LOGIN_PATH)
    if not route.allows(current_permissions()):
        logger.info("User %s redirected from %s to %s", g.user_id, path, route.redirect_to)
        return redirect(route.redirect_to)
    return _shell()


def _register_pages():
    for route in BROWSER_ROUTES:
        endpoint = "page_" + (route.path.strip("/").replace("-", "_") or "index")
        navigation_bp.add_url_rule(
            route.path, endpoint,
            view_func=lambda path=route.path: _page(path),
            methods=["GET"],
        )


_register_pages()


@navigation_bp.route(LOGIN_PATH, methods=["GET"])
def login_page():
    return send_from_directory(current_app.template_folder, "login.html")


@navigation_bp.route("/api/v1/navigation", methods=["GET"])
def navigation():
    resolved = current_permissions()
    return jsonify({
        "role": resolved.role,
        "routes": [
            {"path": r.path, "label": r.label}
            for r in BROWSER_ROUTES if r.allows(resolved)
        ],
    })
