"""Validation task selection and CRM output field construction.

Everything here is pure: no I/O, no clock reads unless a value is passed in.
"""

import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .models import (
    ValidationFailure,
    ValidationFlags,
    ValidationOutcome,
    ValidationSuccess,
    ValidationType,
)

ADDRESS_PROPERTIES = ("address", "city", "state", "zip")


@dataclass(frozen=True)
class ValidationTask:
    """One validation type, when it applies, and what its validator receives."""
    type: ValidationType
    applies: Callable[[Mapping[str, Any]], bool]
    build_input: Callable[[Mapping[str, Any]], Dict[str, Any]]


def _present(context: Mapping[str, Any], *names: str) -> bool:
    return any(context.get(name) not in (None, "") for name in names)


VALIDATION_TASKS: Tuple[ValidationTask, ...] = (
    ValidationTask(
        type=ValidationType.EMAIL,
        applies=lambda ctx: _present(ctx, "email"),
        build_input=lambda ctx: {"email": ctx["email"]},
    ),
    ValidationTask(
        type=ValidationType.NAME,
        applies=lambda ctx: _present(ctx, "firstname", "lastname"),
        build_input=lambda ctx: {
            "first_name": ctx.get("firstname"),
            "last_name": ctx.get("lastname"),
        },
    ),
    ValidationTask(
        type=ValidationType.PHONE,
        applies=lambda ctx: _present(ctx, "phone"),
        build_input=lambda ctx: {
            "phone": ctx["phone"],
            "country": ctx.get("country") or "US",
        },
    ),
    ValidationTask(
        type=ValidationType.ADDRESS,
        applies=lambda ctx: _present(ctx, *ADDRESS_PROPERTIES),
        build_input=lambda ctx: {
            "line1": ctx.get("address"),
            "city": ctx.get("city"),
            "state": ctx.get("state"),
            "postal_code": ctx.get("zip"),
            "country": ctx.get("country"),
        },
    ),
)


def select_validations(flags: ValidationFlags, context: Mapping[str, Any]) -> List[ValidationTask]:
    """Tasks that were requested and have something to validate."""
    requested = set(flags.requested())
    return [task for task in VALIDATION_TASKS if task.type in requested and task.applies(context)]


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _valid(value: Any) -> str:
    return "Valid" if value else "Invalid"


def _email_fields(data: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "email": data.get("current_email") or data.get("email") or context.get("email"),
        "email_status": data.get("email_status") or "Unchanged",
        "bounce_status": data.get("bounce_status") or "Unknown",
    }


def _name_fields(data: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    first = data.get("first_name") or context.get("firstname")
    last = data.get("last_name") or context.get("lastname")
    fields = {
        "first_name": first,
        "last_name": last,
        "name_status": "Changed" if data.get("was_corrected") else "Unchanged",
        "name_format": _valid(data.get("format_valid")),
        "middle_name": data.get("middle_name"),
        "honorific": data.get("honorific"),
        "suffix": data.get("suffix"),
    }
    if data.get("first_name") or data.get("last_name"):
        fields["name"] = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    return fields


def _phone_fields(data: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "phone": data.get("formatted"),
        "phone_status": _valid(data.get("is_valid")),
        "phone_type": data.get("type") or "unknown",
        "phone_country_code": data.get("country_code"),
        "is_mobile": _yes_no(data.get("is_mobile")),
    }


def _address_fields(data: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {
        key: data.get(key)
        for key in (
            "house_number", "street_name", "street_type", "street_direction",
            "unit_type", "unit_number", "city", "postal_code", "country", "country_code",
        )
    }
    fields["state_province"] = data.get("state")
    fields["address_status"] = _valid(data.get("is_valid"))
    fields["formatted_address"] = data.get("formatted")
    if data.get("latitude") is not None and data.get("longitude") is not None:
        fields["latitude"] = data["latitude"]
        fields["longitude"] = data["longitude"]
    return fields


FIELD_BUILDERS = {
    ValidationType.EMAIL: _email_fields,
    ValidationType.NAME: _name_fields,
    ValidationType.PHONE: _phone_fields,
    ValidationType.ADDRESS: _address_fields,
}


def build_output_fields(
    outcomes: Mapping[ValidationType, ValidationOutcome],
    context: Optional[Mapping[str, Any]] = None,
    prefix: str = "um_",
    check_id: Optional[str] = None,
    epoch_ms: Optional[int] = None,
) -> Dict[str, str]:
    """Sparse CRM field map from the validation outcomes.

    Failed validations contribute nothing, and absent or empty values are
    omitted instead of being sent as empty strings.
    """
    context = context or {}
    raw: Dict[str, Any] = {}
    if epoch_ms is not None:
        raw[f"date_last_{prefix}check_epoch"] = epoch_ms
    if check_id is not None:
        raw[f"{prefix}check_id"] = check_id

    for vt in ValidationType:
        outcome = outcomes.get(vt)
        if not isinstance(outcome, ValidationSuccess):
            continue
        for key, value in FIELD_BUILDERS[vt](outcome.data, context).items():
            raw[f"{prefix}{key}"] = value

    return {key: str(value) for key, value in raw.items() if value is not None and value != ""}


def generate_check_id(client_id: str, epoch_ms: int, version: str) -> str:
    """Stamp identifying one write-back: epoch tail, client, check value, version."""
    epoch = str(epoch_ms)
    client_number = int(client_id) if client_id.isdecimal() else zlib.crc32(client_id.encode()) % 1000
    check = sum(int(digit) for digit in epoch[:3]) * client_number
    check_digits = str(check).zfill(3)[-3:]
    version_digits = "".join(ch for ch in version if ch.isdigit())
    return f"{epoch[-6:]}{client_id}{check_digits}{version_digits}"


def outcome_to_json(outcome: ValidationOutcome) -> Dict[str, Any]:
    return outcome.model_dump(mode="json")


def failure(vt: ValidationType, error: BaseException) -> ValidationFailure:
    return ValidationFailure(type=vt, error=str(error) or type(error).__name__)
