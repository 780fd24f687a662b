from datetime import datetime
from typing import Mapping, Optional

from .answers import RawAnswer
from .form_builder import FormTemplate


def generate_summary(
    template: FormTemplate,
    answers: Mapping[str, RawAnswer],
    generated_at: Optional[datetime] = None,
) -> str:
    """Render answers grouped by section as a plain-text block."""
    generated_at = generated_at or datetime.now()
    lines = [f"{template.name} Summary", f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S')}", ""]

    for section in template.sections:
        lines.append(f"{section.title}:")
        section_lines = []
        for field in section.fields:
            value = answers.get(field.id)
            if not value:
                continue
            display = ", ".join(value) if isinstance(value, list) else value
            section_lines.append(f"  {field.label}: {display}")
        lines.extend(section_lines or ["  (No data provided)"])
        lines.append("")

    return "\n".join(lines)
