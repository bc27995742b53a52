"""
Lazy firebase_admin app bootstrap shared by the Firestore store and Firebase storage.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def firebase_app(credentials_path: str = "", project_id: str = "", *, storage_bucket: str = ""):
    import firebase_admin  # type: ignore
    from firebase_admin import credentials  # type: ignore

    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options: dict[str, str] = {}
    if project_id:
        options["projectId"] = project_id
    if storage_bucket:
        options["storageBucket"] = storage_bucket
    cred = credentials.Certificate(credentials_path) if credentials_path else credentials.ApplicationDefault()
    logger.info("Initializing firebase_admin app (project=%s)", project_id or "(default)")
    return firebase_admin.initialize_app(cred, options or None)
