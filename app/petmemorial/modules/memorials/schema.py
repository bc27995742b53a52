"""
Declarative form schema for memorial records.

Field names follow the stored document keys (camelCase aliases), so validation
errors are keyed exactly like the HTML form inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

ACCEPTED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
MEMORIAL_CODE_PATTERN = r"^#[0-9]{3,}$"
SEX_CHOICES = ("Macho", "Fêmea")

IMAGE_URL_MESSAGE = "URL inválida."
IMAGE_FILE_MESSAGE = "Por favor, selecione um arquivo de imagem válido (JPG, PNG, WEBP)."

# Operator-facing message per field (min length / missing value).
FIELD_MESSAGES = {
    "name": "O nome é obrigatório.",
    "memorialCode": "O protocolo é obrigatório.",
    "tutors": "O nome do tutor é obrigatório.",
    "animalType": "O tipo do animal é obrigatório.",
    "sex": "Selecione o sexo (Macho ou Fêmea).",
    "breed": "A raça é obrigatória.",
    "birthDate": "A data de nascimento é obrigatória.",
    "cremationDate": "A data de cremação é obrigatória.",
    "tree": "A árvore memorial é obrigatória.",
    "shortDescription": "A descrição curta é obrigatória.",
    "fullDescription": "A descrição completa é obrigatória.",
    "images": "É necessário pelo menos uma imagem.",
}
MEMORIAL_CODE_FORMAT_MESSAGE = "O protocolo deve seguir o formato #001."

_http_url = TypeAdapter(HttpUrl)


@dataclass(frozen=True)
class PendingImage:
    """A newly selected local image file, not uploaded yet."""

    filename: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


def _check_image_entry(value: Any) -> Any:
    if isinstance(value, PendingImage):
        if value.size > 0 and value.content_type in ACCEPTED_IMAGE_TYPES:
            return value
        raise PydanticCustomError("image_file", IMAGE_FILE_MESSAGE)
    if isinstance(value, str) and value:
        try:
            _http_url.validate_python(value)
        except ValidationError:
            pass
        else:
            return value
    raise PydanticCustomError("image_url", IMAGE_URL_MESSAGE)


ImageEntry = Annotated[Any, AfterValidator(_check_image_entry)]


class MemorialForm(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    name: str = Field(min_length=2)
    memorial_code: str = Field(min_length=1, pattern=MEMORIAL_CODE_PATTERN)
    tutors: str = Field(min_length=2)
    animal_type: str = Field(min_length=2)
    sex: Literal["Macho", "Fêmea"]
    breed: str = Field(min_length=2)
    birth_date: str = Field(min_length=1)
    cremation_date: str = Field(min_length=1)
    tree: str = Field(min_length=2)
    short_description: str = Field(min_length=10)
    full_description: str = Field(min_length=20)
    images: list[ImageEntry] = Field(min_length=1)

    @field_validator("birth_date", "cremation_date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        try:
            date.fromisoformat(v)
        except ValueError:
            raise PydanticCustomError("iso_date", "Data inválida (use AAAA-MM-DD).")
        return v


def default_form_values() -> dict[str, Any]:
    """Form values for a memorial that does not exist yet."""
    return {
        "name": "",
        "memorialCode": "",
        "tutors": "",
        "animalType": "Cão",
        "sex": "Macho",
        "breed": "",
        "birthDate": "",
        "cremationDate": "",
        "tree": "",
        "shortDescription": "",
        "fullDescription": "",
        "images": [""],
    }


def _error_key(loc: tuple) -> str:
    return ".".join(str(p) for p in loc)


def _error_message(key: str, err: dict) -> str:
    if err["type"] in ("image_url", "image_file", "iso_date"):
        return err["msg"]
    if key == "memorialCode" and err["type"] == "string_pattern_mismatch":
        return MEMORIAL_CODE_FORMAT_MESSAGE
    return FIELD_MESSAGES.get(key, err["msg"])


def validate_memorial_form(raw: dict[str, Any]) -> tuple[MemorialForm | None, dict[str, list[str]]]:
    """
    Validate raw form values.

    Returns (form, {}) when valid, otherwise (None, errors) where errors maps a
    field name (or "images.<index>" for a single image slot) to its messages.
    """
    try:
        return MemorialForm.model_validate(raw), {}
    except ValidationError as e:
        errors: dict[str, list[str]] = {}
        for err in e.errors():
            key = _error_key(err["loc"])
            msg = _error_message(key, err)
            if msg not in errors.setdefault(key, []):
                errors[key].append(msg)
        return None, errors
