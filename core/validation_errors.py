from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

_LOCATIONS = frozenset({"body", "query", "path", "header", "cookie"})
_INTEGER_ERRORS = frozenset({"int_type", "int_from_float", "int_parsing"})
MINOR_UNITS_HINT = "Amounts are integers in the currency's minor unit (5000 = 50.00 USD)"


@dataclass(frozen=True)
class FieldError:
    path: str
    location: str
    message: str
    error_type: str
    hint: str | None = None

    def as_detail(self) -> dict[str, str]:
        detail = {"path": self.path, "location": self.location, "message": self.message, "errorType": self.error_type}
        if self.hint is not None:
            detail["hint"] = self.hint
        return detail


def _locate(loc: Any) -> tuple[str, str]:
    if loc is None:
        return "body", "(root)"
    parts = [str(part) for part in loc] if isinstance(loc, (list, tuple)) else [str(loc)]
    location = "body"
    if parts and parts[0] in _LOCATIONS:
        location, parts = parts[0], parts[1:]
    return location, ".".join(parts) or "(root)"


def to_field_error(error: dict[str, Any]) -> FieldError:
    location, path = _locate(error.get("loc"))
    error_type = str(error.get("type", "validation_error"))
    hint = None
    if path.split(".")[-1].endswith("_minor") and error_type in _INTEGER_ERRORS:
        hint = MINOR_UNITS_HINT
    return FieldError(
        path=path,
        location=location,
        message=str(error.get("msg", "Invalid value")),
        error_type=error_type,
        hint=hint,
    )


def format_validation_error_details(errors: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Flatten request validation errors into the ``details`` of a VALIDATION_FAILED envelope.

    Input values and error contexts are left out so card tokens and secrets
    posted by the caller are never echoed back.
    """
    field_errors = [to_field_error(error) for error in errors]
    missing = list(dict.fromkeys(item.path for item in field_errors if item.error_type == "missing"))

    if missing:
        summary = "Validation failed: missing required field(s): " + ", ".join(missing)
    else:
        summary = f"Validation failed for {len(field_errors)} field(s)"

    return {
        "summary": summary,
        "missingFields": missing,
        "fieldErrors": [item.as_detail() for item in field_errors],
    }
