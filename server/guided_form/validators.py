import re
import logging
from typing import List, Mapping, NamedTuple, Optional

from .answers import RawAnswer, is_filled
from .form_builder import FieldType, FormField, FormTemplate

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")


class ValidationIssue(NamedTuple):
    field_id: str
    message: str


def _format_bound(bound: float) -> str:
    return f"{bound:g}"


def validate_field(field: FormField, value: Optional[RawAnswer]) -> Optional[str]:
    """Return the first violated rule's message for ``value``, or None."""
    if not is_filled(value):
        return f"{field.label} is required" if field.required else None

    v = ",".join(value) if isinstance(value, list) else value

    if field.type == FieldType.EMAIL and not EMAIL_RE.match(v):
        return "Please enter a valid email address"

    if field.type == FieldType.PHONE and not PHONE_RE.match(v):
        return "Please enter a valid phone number"

    rule = field.validation
    if rule and rule.pattern:
        try:
            if not re.search(rule.pattern, v):
                return rule.custom_error_message or "Invalid format"
        except re.error as e:
            # A broken template pattern should not block the user
            logger.warning(f"Invalid validation pattern on field {field.id}: {e}")

    if field.type == FieldType.NUMBER:
        try:
            number = float(v)
        except ValueError:
            return "Please enter a valid number"
        if rule and rule.min_value is not None and number < rule.min_value:
            return f"Minimum value is {_format_bound(rule.min_value)}"
        if rule and rule.max_value is not None and number > rule.max_value:
            return f"Maximum value is {_format_bound(rule.max_value)}"

    return None


def validate_all(template: FormTemplate, answers: Mapping[str, RawAnswer]) -> List[ValidationIssue]:
    """Validate every field in declaration order, one issue per failing field."""
    issues: List[ValidationIssue] = []
    for field in template.all_fields():
        message = validate_field(field, answers.get(field.id))
        if message:
            issues.append(ValidationIssue(field.id, message))
    return issues
