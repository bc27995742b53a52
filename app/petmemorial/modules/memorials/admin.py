from __future__ import annotations

import re

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.petmemorial.audit import entity_history, record_event
from app.petmemorial.db import db_session
from app.petmemorial.docstore import DocumentStore, DocumentStoreError, docstore_from_config
from app.petmemorial.models import User
from app.petmemorial.modules.memorials.schema import SEX_CHOICES, PendingImage, validate_memorial_form
from app.petmemorial.modules.memorials.service import (
    DELETE_FAILED_MESSAGE,
    LOAD_FAILED_MESSAGE,
    SAVE_FAILED_MESSAGE,
    FORM_FIELDS,
    MemorialDeleteError,
    MemorialError,
    MemorialLoadError,
    MemorialNotFound,
    MemorialSaveError,
    SaveInProgress,
    delete_memorial,
    guard_key,
    is_new,
    list_memorials,
    load_memorial,
    save_guard,
    save_memorial,
)
from app.petmemorial.rbac import require_permission
from app.petmemorial.storage import Storage, StorageUnavailableError, storage_from_config

bp = Blueprint("memorials", __name__)

_IMAGE_FIELD_RE = re.compile(r"^images-(\d+)-(url|file)$")
AUDIT_ENTITY = "MemorialRecord"
ACTION_LABELS = {
    "memorial.create": "Criado",
    "memorial.edit": "Editado",
}


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _store(error: type[MemorialError], message: str) -> DocumentStore:
    """Configured document store; a misconfigured backend surfaces as `error(message)`."""
    try:
        return docstore_from_config(current_app.config, session=db_session())
    except DocumentStoreError as e:
        current_app.logger.exception("Document store unavailable")
        raise error(message) from e


def _storage_or_none() -> Storage | None:
    try:
        return storage_from_config(current_app.config, base_url=request.host_url)
    except StorageUnavailableError as e:
        current_app.logger.warning("Image storage unavailable: %s", e)
        return None


def _image_entries() -> list:
    """
    Ordered image slots from `images-<n>-url` / `images-<n>-file` inputs.
    A selected file replaces the slot's URL.
    """
    slots: dict[int, object] = {}
    for key in request.form:
        m = _IMAGE_FIELD_RE.match(key)
        if m and m.group(2) == "url":
            slots[int(m.group(1))] = (request.form.get(key) or "").strip()
    for key in request.files:
        m = _IMAGE_FIELD_RE.match(key)
        if not m or m.group(2) != "file":
            continue
        f = request.files[key]
        if f and f.filename:
            slots[int(m.group(1))] = PendingImage(
                filename=f.filename,
                content_type=(f.mimetype or "application/octet-stream").strip(),
                data=f.read(),
            )
        else:
            slots.setdefault(int(m.group(1)), "")
    return [slots[i] for i in sorted(slots)]


def _form_payload() -> dict:
    payload: dict = {k: request.form.get(k, "") for k in FORM_FIELDS}
    payload["birthDate"] = request.form.get("birthDate", "")
    payload["cremationDate"] = request.form.get("cremationDate", "")
    payload["images"] = _image_entries()
    return payload


def _render_form(record_id: str, values: dict, errors: dict | None = None):
    return render_template(
        "admin/memorials/edit.html",
        record_id=record_id,
        is_new=is_new(record_id),
        values=values,
        errors=errors or {},
        sex_choices=SEX_CHOICES,
        saving=save_guard.is_held(guard_key(record_id, getattr(g.current_user, "id", None))),
        history=[] if is_new(record_id) else entity_history(db_session(), AUDIT_ENTITY, record_id, limit=5),
        action_labels=ACTION_LABELS,
    )


# ---------- Dashboard ----------
@bp.get("/dashboard")
@require_permission("memorials.view")
def dashboard():
    try:
        memorials = list_memorials(_store(MemorialLoadError, LOAD_FAILED_MESSAGE))
    except Exception:
        current_app.logger.exception("Failed to list memorials")
        flash("Não foi possível carregar os memoriais.", "danger")
        memorials = []
    resp = current_app.make_response(render_template("admin/memorials/dashboard.html", memorials=memorials))
    # Always show the latest writes after a save/delete redirect.
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------- Edit / New ----------
@bp.get("/edit/<record_id>")
@require_permission("memorials.edit")
def memorial_edit_get(record_id: str):
    try:
        values = load_memorial(_store(MemorialLoadError, LOAD_FAILED_MESSAGE), record_id)
    except (MemorialNotFound, MemorialLoadError) as e:
        flash(str(e), "danger")
        return redirect(url_for("memorials.dashboard"))
    return _render_form(record_id, values)


@bp.post("/edit/<record_id>")
@require_permission("memorials.edit")
def memorial_edit_post(record_id: str):
    s = db_session()
    u = _current_user()
    payload = _form_payload()

    form, errors = validate_memorial_form(payload)
    if form is None:
        flash("Corrija os campos destacados.", "danger")
        return _render_form(record_id, payload, errors), 400

    creating = is_new(record_id)
    try:
        with save_guard.hold(guard_key(record_id, u.id)):
            saved_id = save_memorial(_store(MemorialSaveError, SAVE_FAILED_MESSAGE), _storage_or_none(), record_id, form)
            record_event(
                s,
                actor=u,
                action="memorial.create" if creating else "memorial.edit",
                entity_type=AUDIT_ENTITY,
                entity_id=saved_id,
                metadata={"memorialCode": form.memorial_code, "name": form.name, "images": len(form.images)},
            )
            s.commit()
    except SaveInProgress as e:
        flash(str(e), "warning")
        return _render_form(record_id, payload), 409
    except MemorialSaveError as e:
        s.rollback()
        flash(str(e), "danger")
        return _render_form(record_id, payload)
    except SQLAlchemyError:
        s.rollback()
        current_app.logger.exception("Commit failed for memorial %s", record_id)
        flash(SAVE_FAILED_MESSAGE, "danger")
        return _render_form(record_id, payload)

    flash("Novo memorial criado." if creating else "Memorial atualizado.", "success")
    return redirect(url_for("memorials.dashboard"))


# ---------- Delete ----------
@bp.get("/edit/<record_id>/delete")
@require_permission("memorials.delete")
def memorial_delete_get(record_id: str):
    if is_new(record_id):
        abort(404)
    try:
        values = load_memorial(_store(MemorialLoadError, LOAD_FAILED_MESSAGE), record_id)
    except (MemorialNotFound, MemorialLoadError) as e:
        flash(str(e), "danger")
        return redirect(url_for("memorials.dashboard"))
    return render_template("admin/memorials/delete_confirm.html", record_id=record_id, values=values)


@bp.post("/edit/<record_id>/delete")
@require_permission("memorials.delete")
def memorial_delete_post(record_id: str):
    if is_new(record_id):
        abort(404)
    s = db_session()
    u = _current_user()

    if (request.form.get("confirm") or "").strip().lower() not in ("yes", "1", "true", "on"):
        flash("Exclusão cancelada.", "info")
        return redirect(url_for("memorials.memorial_edit_get", record_id=record_id))

    try:
        with save_guard.hold(guard_key(record_id, u.id)):
            delete_memorial(_store(MemorialDeleteError, DELETE_FAILED_MESSAGE), record_id)
            record_event(s, actor=u, action="memorial.delete", entity_type=AUDIT_ENTITY, entity_id=record_id)
            s.commit()
    except SaveInProgress as e:
        flash(str(e), "warning")
        return redirect(url_for("memorials.memorial_edit_get", record_id=record_id))
    except (MemorialDeleteError, SQLAlchemyError) as e:
        s.rollback()
        msg = str(e) if isinstance(e, MemorialDeleteError) else DELETE_FAILED_MESSAGE
        flash(msg, "danger")
        return redirect(url_for("memorials.memorial_edit_get", record_id=record_id))

    flash("Memorial excluído.", "success")
    return redirect(url_for("memorials.dashboard"))
