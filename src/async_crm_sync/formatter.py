# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Conversion of submitted form data into outbound CRM records.

Each submitted field goes through three steps:

1. Filtering: the form configuration decides the CRM field name, or drops
   the field when strict mapping is enabled and it is not configured.
2. Type resolution: explicit field configuration wins, then cached CRM
   metadata for the target field, then inference from value and name.
3. Formatting: the value is coerced for its type and cut to the field's
   maximum length.

Truncation never raises; it logs a warning and is reported in the record's
diagnostics.

Example:
    >>> formatter = FieldFormatter()
    >>> result = formatter.format_submission(
    ...     {"email": "user@example.com", "interests": ["a", "b"]},
    ...     config=FormConfiguration(form_name="contact"),
    ... )
    >>> result.record["Email"], result.record["Lead_Source"]
    ('user@example.com', 'Form: contact')
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from .logger import get_logger
from .models import FieldMetadata, FieldType, FormattedRecord, FormConfiguration

DEFAULT_MAX_LENGTH = 255
LEAD_SOURCE_FIELD = "Lead_Source"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_CHARS_RE = re.compile(r"^\+?[\d\s\-().]+$")
_PHONE_DIGITS = (10, 15)
_BOOLEAN_TOKENS = frozenset({"yes", "no", "true", "false"})
_TRUE_TOKENS = frozenset({"yes", "true", "1"})

STANDARD_FIELD_NAMES = {
    "fullname": "Last_Name",
    "name": "Last_Name",
    "lastname": "Last_Name",
    "firstname": "First_Name",
    "email": "Email",
    "emailaddress": "Email",
    "company": "Company",
    "companyname": "Company",
    "organization": "Company",
    "phone": "Phone",
    "phonenumber": "Phone",
    "mobile": "Mobile",
    "mobilenumber": "Mobile",
}

# CRM metadata data types mapped onto the formatter's types.
_METADATA_TYPES = {
    "email": FieldType.EMAIL,
    "phone": FieldType.PHONE,
    "boolean": FieldType.BOOLEAN,
    "picklist": FieldType.PICKLIST,
    "multiselectpicklist": FieldType.MULTISELECT,
}

logger = get_logger("FieldFormatter")


def _looks_like_phone(value: str) -> bool:
    if not _PHONE_CHARS_RE.match(value.strip()):
        return False
    digits = sum(ch.isdigit() for ch in value)
    return _PHONE_DIGITS[0] <= digits <= _PHONE_DIGITS[1]


def infer_field_type(value: Any, field_name: str = "") -> FieldType:
    """Guess the CRM type of a value when nothing explicit is known.

    Value patterns are checked before the field name: email, phone,
    boolean tokens, arrays, then name hints, else text.
    """
    if isinstance(value, str):
        if _EMAIL_RE.match(value):
            return FieldType.EMAIL
        if _looks_like_phone(value):
            return FieldType.PHONE
        if value.strip().lower() in _BOOLEAN_TOKENS:
            return FieldType.BOOLEAN
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, (list, tuple)):
        return FieldType.MULTISELECT

    name = field_name.lower()
    if "email" in name:
        return FieldType.EMAIL
    if "phone" in name or "tel" in name:
        return FieldType.PHONE
    if "consent" in name or "agree" in name:
        return FieldType.BOOLEAN
    return FieldType.TEXT


def normalize_data_type(data_type: str | None) -> FieldType:
    """Map a CRM metadata ``data_type`` onto a FieldType (text by default)."""
    return _METADATA_TYPES.get((data_type or "").lower(), FieldType.TEXT)


def to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_TOKENS
    return bool(value)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(item) for item in value)
    return str(value)


def truncate_value(value: str, max_length: int | None, field_name: str = "") -> str:
    """Cut ``value`` to ``max_length`` characters, logging when it does.

    Values within the limit, and any value when no limit is known, are
    returned unchanged.
    """
    if not max_length or len(value) <= max_length:
        return value
    logger.warning("Truncated field %s from %d to %d chars", field_name or "?", len(value), max_length)
    return value[:max_length]


def format_value(
    value: Any,
    field_type: FieldType,
    max_length: int | None = DEFAULT_MAX_LENGTH,
    field_name: str = "",
) -> Any:
    """Coerce ``value`` for a field of ``field_type``.

    Booleans become ``bool``; everything else becomes a string cut to
    ``max_length``, multi-select arrays joined with ``;`` first.
    """
    if field_type is FieldType.BOOLEAN:
        return to_boolean(value)
    return truncate_value(_as_text(value, field_type), max_length, field_name)


def _as_text(value: Any, field_type: FieldType) -> str:
    if field_type is FieldType.MULTISELECT and isinstance(value, (list, tuple)):
        return ";".join(_stringify(item) for item in value)
    return _stringify(value)


def convert_field_name(form_field: str) -> str:
    """Translate a form field name into a CRM API field name.

    Well-known names map to the standard CRM fields; anything else becomes
    camelCase of its alphanumeric words.

    Example:
        >>> convert_field_name("full_name")
        'Last_Name'
        >>> convert_field_name("Preferred contact time")
        'preferredContactTime'
    """
    normalized = re.sub(r"[^a-z0-9]", "", form_field.lower())
    if normalized in STANDARD_FIELD_NAMES:
        return STANDARD_FIELD_NAMES[normalized]
    words = re.sub(r"[^a-zA-Z0-9\s]", "", form_field).split()
    if not words:
        return form_field
    return words[0].lower() + "".join(word[:1].upper() + word[1:].lower() for word in words[1:])


def missing_required_fields(payload: Mapping[str, Any], config: FormConfiguration) -> list[str]:
    """Return configured required fields that are absent or empty in ``payload``."""
    return [
        form_field
        for form_field, field_config in config.submit_fields.items()
        if field_config.required and payload.get(form_field) in (None, "")
    ]


class FieldFormatter:
    """Build outbound records from submitted payloads.

    Attributes:
        default_max_length: Limit used when neither configuration nor
            metadata knows one.
    """

    def __init__(self, default_max_length: int = DEFAULT_MAX_LENGTH):
        self.default_max_length = default_max_length

    def _resolve(
        self,
        form_field: str,
        crm_field: str,
        value: Any,
        config: FormConfiguration,
        metadata: Mapping[str, FieldMetadata],
    ) -> tuple[FieldType, int]:
        field_config = config.submit_fields.get(form_field)
        if field_config is not None and field_config.field_type is not None:
            return field_config.field_type, field_config.max_length or self.default_max_length
        meta = metadata.get(crm_field)
        if meta is not None:
            return normalize_data_type(meta.data_type), meta.max_length or self.default_max_length
        max_length = field_config.max_length if field_config is not None else None
        return infer_field_type(value, form_field), max_length or self.default_max_length

    def format_submission(
        self,
        payload: Mapping[str, Any],
        *,
        config: FormConfiguration,
        metadata: Iterable[FieldMetadata] = (),
    ) -> FormattedRecord:
        """Filter, type and format one submission payload.

        Args:
            payload: Submitted field values, in submission order.
            config: The form's configuration; a default non-strict one is
                used by callers when the form has none.
            metadata: Cached CRM field metadata of the target module.

        Returns:
            The outbound record with its diagnostics. The lead source field
            is always set.
        """
        metadata_by_name = {field.api_name: field for field in metadata}
        record: dict[str, Any] = {}
        excluded: list[str] = []
        truncated: list[str] = []
        field_types: dict[str, FieldType] = {}

        for form_field, value in payload.items():
            if form_field in config.submit_fields:
                crm_field = config.submit_fields[form_field].crm_field
            elif form_field in config.field_mappings:
                crm_field = config.field_mappings[form_field]
            elif not config.strict_mapping:
                crm_field = convert_field_name(form_field)
            else:
                excluded.append(form_field)
                continue
            if value is None or value == "":
                continue

            field_type, max_length = self._resolve(form_field, crm_field, value, config, metadata_by_name)
            if field_type is FieldType.BOOLEAN:
                formatted: Any = to_boolean(value)
            else:
                text = _as_text(value, field_type)
                formatted = truncate_value(text, max_length, crm_field)
                if len(formatted) < len(text):
                    truncated.append(crm_field)
            record[crm_field] = formatted
            field_types[crm_field] = field_type

        record[LEAD_SOURCE_FIELD] = config.lead_source
        if excluded:
            logger.info(
                "Form %s: strict mapping excluded %d field(s): %s",
                config.form_name,
                len(excluded),
                ", ".join(excluded),
            )
        return FormattedRecord(
            record=record,
            lead_source=config.lead_source,
            excluded_fields=excluded,
            truncated_fields=truncated,
            field_types=field_types,
            strict_mapping=config.strict_mapping,
        )
