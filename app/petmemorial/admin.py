import os

from flask import Blueprint, current_app, redirect, render_template, url_for
from sqlalchemy import text

from app.petmemorial.db import db_session
from app.petmemorial.rbac import require_permission
from app.petmemorial.storage import missing_storage_settings

bp = Blueprint("admin", __name__)


@bp.get("/")
def index():
    # Anonymous operators are sent on to the login page by the dashboard guard.
    return redirect(url_for("memorials.dashboard"))


@bp.get("/status")
@require_permission("admin.view")
def status():
    s = db_session()
    info = {
        "env": (current_app.config.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "docstore_backend": (current_app.config.get("DOCSTORE_BACKEND") or "sql").strip().lower(),
        "storage_backend": (current_app.config.get("STORAGE_BACKEND") or "local").strip().lower(),
        "storage_configured": False,
        "storage_error": None,
        "pid": os.getpid(),
    }

    try:
        s.execute(text("SELECT 1"))
        info["db_connected"] = True
    except Exception as e:
        info["db_error"] = str(e)

    # Settings only, no network calls.
    missing = missing_storage_settings(current_app.config)
    info["storage_configured"] = not missing
    if missing:
        info["storage_error"] = f"Missing: {', '.join(missing)}"

    return render_template("admin/status.html", status=info)
