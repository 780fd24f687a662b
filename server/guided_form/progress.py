"""Completion progress and field traversal over a template and its answers."""
import math
from typing import Collection, List, Mapping, NamedTuple, Optional

from .answers import RawAnswer, is_filled
from .form_builder import FormField, FormTemplate


class Progress(NamedTuple):
    percent: int
    missing_required: int


def flatten_fields(template: FormTemplate) -> List[FormField]:
    return template.all_fields()


def compute_progress(template: FormTemplate, answers: Mapping[str, RawAnswer]) -> Progress:
    required = [f for f in flatten_fields(template) if f.required]
    if not required:
        return Progress(100, 0)

    filled = sum(1 for f in required if is_filled(answers.get(f.id)))
    # Half-up rounding; round() would round 62.5 down to 62
    percent = int(math.floor(filled * 100 / len(required) + 0.5))
    return Progress(percent, len(required) - filled)


def next_missing_field(
    template: FormTemplate,
    answers: Mapping[str, RawAnswer],
    current_field_id: Optional[str] = None,
    skipped: Collection[str] = (),
) -> Optional[FormField]:
    """Return the next required, non-skipped, unanswered field.

    Scans forward from ``current_field_id`` first, then wraps around to the
    start of the template. Skipped fields are excluded from both scans.
    """
    fields = flatten_fields(template)

    def missing(f: FormField) -> bool:
        return f.required and f.id not in skipped and not is_filled(answers.get(f.id))

    if current_field_id:
        index = next((i for i, f in enumerate(fields) if f.id == current_field_id), None)
        if index is not None:
            for f in fields[index + 1:]:
                if missing(f):
                    return f

    return next((f for f in fields if missing(f)), None)
