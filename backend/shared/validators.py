"""Shared validation helpers for settings and read-path parameters."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from pydantic_settings import EnvSettingsSource

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo


def parse_string_list(value: str | list[str], *, allow_empty: bool = False) -> list[str]:
    """Parse a list of strings given as a list, a JSON array, or a comma-separated string.

    Raises ValueError for blank strings, malformed JSON, non-string items,
    and (unless allow_empty) empty lists.
    """
    if isinstance(value, list):
        items = value
    else:
        stripped = value.strip()
        if not stripped:
            raise ValueError("String list value must not be empty")
        if stripped.startswith("["):
            try:
                items = json.loads(stripped)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON array: {e}") from e
            if not isinstance(items, list) or not all(isinstance(item, str) for item in items):
                raise ValueError("JSON value must be an array of strings")
        else:
            items = [part.strip() for part in stripped.split(",") if part.strip()]

    if not allow_empty and not items:
        raise ValueError("String list value must not be empty")
    return items


def parse_page(limit: str | int | None, offset: str | int | None, *, default_limit: int, max_limit: int) -> tuple[int, int]:
    """Parse paging parameters, clamping the limit to `max_limit`.

    Raises ValueError for non-integer, non-positive limits or negative offsets.
    """
    try:
        parsed_limit = default_limit if limit in (None, "") else int(limit)
        parsed_offset = 0 if offset in (None, "") else int(offset)
    except (TypeError, ValueError) as e:
        raise ValueError("limit and offset must be integers") from e
    if parsed_limit < 1:
        raise ValueError("limit must be at least 1")
    if parsed_offset < 0:
        raise ValueError("offset must not be negative")
    return min(parsed_limit, max_limit), parsed_offset


_STRING_LIST_FIELDS = {"cors_origins"}


class StringListEnvSettingsSource(EnvSettingsSource):
    """Env settings source that hands string-list fields to validators unparsed.

    pydantic-settings would otherwise JSON-decode list-typed env values before
    field validators run, rejecting the comma-separated form.
    """

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name in _STRING_LIST_FIELDS and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)
