"""
Typed field payloads, one variant per field type, and value validation.

``Field.properties`` is stored as JSON but always passes through
``parse_properties`` first, so each row carries exactly the payload of its
variant.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from countersign.common.errors import ValidationError
from countersign.envelopes.models import FieldType

MAX_SIGNATURE_LENGTH = 100_000
CHECKED = "true"
UNCHECKED = "false"


class SignatureProperties(BaseModel):
    type: Literal["signature"] = "signature"


class InitialProperties(BaseModel):
    type: Literal["initial"] = "initial"
    max_length: int = Field(default=10, ge=1, le=100)


class TextProperties(BaseModel):
    type: Literal["text"] = "text"
    min_length: int = Field(default=0, ge=0)
    max_length: int = Field(default=1000, ge=1, le=10_000)
    pattern: Optional[str] = Field(default=None, max_length=500)
    placeholder: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min_length > self.max_length:
            raise ValueError("min_length exceeds max_length")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"invalid pattern: {exc}") from exc
        return self


class DateProperties(BaseModel):
    type: Literal["date"] = "date"
    min_date: Optional[date] = None
    max_date: Optional[date] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min_date and self.max_date and self.min_date > self.max_date:
            raise ValueError("min_date is after max_date")
        return self


class CheckboxProperties(BaseModel):
    type: Literal["checkbox"] = "checkbox"


class DropdownProperties(BaseModel):
    type: Literal["dropdown"] = "dropdown"
    options: list[str] = Field(min_length=1, max_length=500)

    @model_validator(mode="after")
    def check_options(self):
        if len(set(self.options)) != len(self.options):
            raise ValueError("dropdown options must be unique")
        return self


class NumberProperties(BaseModel):
    type: Literal["number"] = "number"
    minimum: Optional[Decimal] = None
    maximum: Optional[Decimal] = None
    decimals: int = Field(default=2, ge=0, le=10)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.minimum is not None and self.maximum is not None and self.minimum > self.maximum:
            raise ValueError("minimum exceeds maximum")
        return self


FieldProperties = Annotated[
    Union[
        SignatureProperties,
        InitialProperties,
        TextProperties,
        DateProperties,
        CheckboxProperties,
        DropdownProperties,
        NumberProperties,
    ],
    Field(discriminator="type"),
]

_properties_adapter = TypeAdapter(FieldProperties)


def parse_properties(field_type: FieldType, raw: Optional[dict]):
    """Validate ``raw`` as the payload of ``field_type``; the tag always wins."""
    data = dict(raw or {})
    data["type"] = FieldType(field_type).value
    return _properties_adapter.validate_python(data)


def dump_properties(field_type: FieldType, raw: Optional[dict]) -> dict:
    return parse_properties(field_type, raw).model_dump(mode="json", exclude_none=True)


def validate_field_value(field_type: FieldType, properties: dict, value) -> str:
    """Normalise a submitted value to its stored string form or raise ValidationError."""
    if value is None:
        raise ValidationError("field value is required")
    props = parse_properties(field_type, properties)
    field_type = FieldType(field_type)

    if field_type == FieldType.checkbox:
        if isinstance(value, bool):
            return CHECKED if value else UNCHECKED
        text = str(value).strip().lower()
        if text not in (CHECKED, UNCHECKED):
            raise ValidationError("checkbox value must be true or false")
        return text

    text = str(value)
    if field_type in (FieldType.signature, FieldType.initial):
        text = text.strip()
        if not text:
            raise ValidationError("signature value must not be empty")
        limit = props.max_length if field_type == FieldType.initial else MAX_SIGNATURE_LENGTH
        if len(text) > limit:
            raise ValidationError(f"{field_type.value} value is too long")
        return text

    if field_type == FieldType.text:
        if len(text) < props.min_length or len(text) > props.max_length:
            raise ValidationError("text value length out of range")
        if props.pattern is not None and not re.fullmatch(props.pattern, text):
            raise ValidationError("text value does not match the required pattern")
        return text

    if field_type == FieldType.date:
        try:
            parsed = date.fromisoformat(text.strip())
        except ValueError as exc:
            raise ValidationError("date value must be YYYY-MM-DD") from exc
        if props.min_date and parsed < props.min_date:
            raise ValidationError("date value is before the allowed range")
        if props.max_date and parsed > props.max_date:
            raise ValidationError("date value is after the allowed range")
        return parsed.isoformat()

    if field_type == FieldType.dropdown:
        if text not in props.options:
            raise ValidationError("value is not one of the dropdown options")
        return text

    if field_type == FieldType.number:
        try:
            number = Decimal(text.strip())
        except InvalidOperation as exc:
            raise ValidationError("number value is not numeric") from exc
        if not number.is_finite():
            raise ValidationError("number value is not numeric")
        if props.minimum is not None and number < props.minimum:
            raise ValidationError("number value below minimum")
        if props.maximum is not None and number > props.maximum:
            raise ValidationError("number value above maximum")
        if number.as_tuple().exponent < -props.decimals:
            raise ValidationError(f"number value allows at most {props.decimals} decimals")
        return str(number)

    raise ValidationError(f"unsupported field type {field_type.value}")


def is_filled(field_type: FieldType, value: Optional[str]) -> bool:
    """A required checkbox counts as filled only when checked."""
    if value is None or value == "":
        return False
    if FieldType(field_type) == FieldType.checkbox:
        return value == CHECKED
    return True
