from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from werkzeug.utils import secure_filename

from app.petmemorial.docstore import SERVER_TIMESTAMP
from app.petmemorial.modules.memorials.schema import MemorialForm, PendingImage, default_form_values
from app.petmemorial.storage import StorageError, StorageUnavailableError

if TYPE_CHECKING:
    from app.petmemorial.docstore import DocumentStore
    from app.petmemorial.storage import Storage

logger = logging.getLogger(__name__)

COLLECTION = "pet_profiles"
NEW_RECORD_ID = "new"
IMAGE_KEY_PREFIX = "pet_images"

FORM_FIELDS = (
    "name",
    "memorialCode",
    "tutors",
    "animalType",
    "sex",
    "breed",
    "tree",
    "shortDescription",
    "fullDescription",
)


LOAD_FAILED_MESSAGE = "Não foi possível carregar os dados do memorial."
SAVE_FAILED_MESSAGE = "Não foi possível salvar o memorial."
DELETE_FAILED_MESSAGE = "Não foi possível excluir o memorial."


class MemorialError(Exception):
    """Base class; str(e) is an operator-facing message."""


class MemorialNotFound(MemorialError):
    pass


class MemorialLoadError(MemorialError):
    pass


class MemorialSaveError(MemorialError):
    pass


class MemorialDeleteError(MemorialError):
    pass


class SaveInProgress(MemorialError):
    pass


def is_new(record_id: str | None) -> bool:
    return not record_id or record_id == NEW_RECORD_ID


def to_iso_date(value: Any) -> str:
    """Stored date value (date-time, date or string) -> YYYY-MM-DD for a date input."""
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return text


def parse_form_date(value: str) -> datetime:
    """YYYY-MM-DD -> UTC midnight date-time, the stored representation."""
    d = date.fromisoformat(value)
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


# ---------- Load ----------
def load_memorial(store: "DocumentStore", record_id: str) -> dict[str, Any]:
    """
    Form values for the given record. The "new" sentinel skips the fetch and
    returns defaults.
    """
    if is_new(record_id):
        return default_form_values()

    try:
        data = store.get(COLLECTION, record_id)
    except Exception as e:
        logger.exception("Failed to load memorial %s", record_id)
        raise MemorialLoadError(LOAD_FAILED_MESSAGE) from e
    if data is None:
        raise MemorialNotFound("Memorial não encontrado.")

    values = default_form_values()
    for key in FORM_FIELDS:
        if data.get(key) is not None:
            values[key] = data[key]
    values["birthDate"] = to_iso_date(data.get("birthDate"))
    values["cremationDate"] = to_iso_date(data.get("cremationDate"))
    urls = [u for u in (data.get("imageUrls") or []) if isinstance(u, str) and u]
    values["images"] = urls or [""]
    return values


def _listing_order(row: dict[str, Any]) -> tuple:
    # "#200" before "#1000"; codes without digits go last.
    digits = row["memorialCode"].lstrip("#")
    if digits.isdigit():
        return (0, int(digits), row["name"])
    return (1, 0, row["memorialCode"], row["name"])


def list_memorials(store: "DocumentStore") -> list[dict[str, Any]]:
    """Dashboard rows, ordered by memorial code."""
    rows = []
    for doc_id, data in store.list(COLLECTION):
        urls = data.get("imageUrls") or []
        rows.append(
            {
                "id": doc_id,
                "name": data.get("name") or "",
                "memorialCode": data.get("memorialCode") or "",
                "tutors": data.get("tutors") or "",
                "animalType": data.get("animalType") or "",
                "cremationDate": to_iso_date(data.get("cremationDate")),
                "coverUrl": urls[0] if urls else None,
            }
        )
    rows.sort(key=_listing_order)
    return rows


# ---------- Images ----------
def build_image_storage_key(filename: str, now: datetime | None = None) -> str:
    """pet_images/<epoch-millis>_<file name>"""
    if now is None:
        now = datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    safe_name = secure_filename(filename) or "image"
    return f"{IMAGE_KEY_PREFIX}/{millis}_{safe_name}"


def _unique_key(filename: str, now: datetime, used: set[str]) -> str:
    # Same-named files in one submit would otherwise share a millisecond key.
    key = build_image_storage_key(filename, now)
    while key in used:
        now = now + timedelta(milliseconds=1)
        key = build_image_storage_key(filename, now)
    used.add(key)
    return key


def upload_image(
    storage: "Storage | None",
    image: PendingImage,
    now: datetime | None = None,
    *,
    used_keys: set[str] | None = None,
) -> str:
    if storage is None:
        raise StorageUnavailableError("Armazenamento de imagens não está disponível.")
    if now is None:
        now = datetime.now(timezone.utc)
    key = _unique_key(image.filename, now, used_keys if used_keys is not None else set())
    storage.put_bytes(key, image.data, content_type=image.content_type)
    url = storage.public_url(key)
    logger.info("Uploaded memorial image key=%s size=%s", key, image.size)
    return url


def resolve_images(entries: Iterable[Any], storage: "Storage | None", *, now: datetime | None = None) -> list[str]:
    """
    Hosted URLs are kept as-is; pending files are uploaded one at a time, in
    order, and replaced by their public URL. Keys are unique within one call.
    """
    urls: list[str] = []
    used_keys: set[str] = set()
    for entry in entries:
        if isinstance(entry, str) and entry.startswith("http"):
            urls.append(entry)
        elif isinstance(entry, PendingImage):
            urls.append(upload_image(storage, entry, now, used_keys=used_keys))
        else:
            raise ValueError(f"Unsupported image entry: {entry!r}")
    return urls


# ---------- Persist ----------
def build_memorial_payload(form: MemorialForm, image_urls: list[str]) -> dict[str, Any]:
    """Document body for pet_profiles. The editable `images` field is never included."""
    data = form.model_dump(by_alias=True, exclude={"images"})
    data["birthDate"] = parse_form_date(form.birth_date)
    data["cremationDate"] = parse_form_date(form.cremation_date)
    data["imageUrls"] = list(image_urls)
    data["updatedAt"] = SERVER_TIMESTAMP
    return data


def save_memorial(
    store: "DocumentStore",
    storage: "Storage | None",
    record_id: str,
    form: MemorialForm,
    *,
    now: datetime | None = None,
) -> str:
    """
    Resolve images then write once: insert when creating, merge-update otherwise.
    Returns the record id.
    """
    try:
        image_urls = resolve_images(form.images, storage, now=now)
        payload = build_memorial_payload(form, image_urls)
        if is_new(record_id):
            payload["createdAt"] = SERVER_TIMESTAMP
            new_id = store.add(COLLECTION, payload)
            logger.info("Created memorial %s (%s)", new_id, form.memorial_code)
            return new_id
        store.set(COLLECTION, record_id, payload, merge=True)
        logger.info("Updated memorial %s (%s)", record_id, form.memorial_code)
        return record_id
    except StorageError as e:
        logger.exception("Image upload failed for memorial %s", record_id)
        raise MemorialSaveError(str(e)) from e
    except Exception as e:
        logger.exception("Failed to save memorial %s", record_id)
        raise MemorialSaveError(SAVE_FAILED_MESSAGE) from e


def delete_memorial(store: "DocumentStore", record_id: str) -> None:
    if is_new(record_id):
        raise MemorialDeleteError("Não é possível excluir um memorial que ainda não foi criado.")
    try:
        store.delete(COLLECTION, record_id)
    except Exception as e:
        logger.exception("Failed to delete memorial %s", record_id)
        raise MemorialDeleteError(DELETE_FAILED_MESSAGE) from e
    logger.info("Deleted memorial %s", record_id)


# ---------- In-flight guard ----------
class SaveGuard:
    """Rejects a second save/delete for the same key while one is running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._lock:
            if key in self._in_flight:
                raise SaveInProgress("Já existe um salvamento em andamento para este memorial. Aguarde.")
            self._in_flight.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(key)


save_guard = SaveGuard()


def guard_key(record_id: str, user_id: int | None) -> str:
    # Creations have no id yet; scope them to the operator.
    if is_new(record_id):
        return f"new:{user_id}"
    return f"memorial:{record_id}"
