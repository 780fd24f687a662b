"""
Answer values for a guided form session.

Every stored value is tagged with its shape: ``TextAnswer`` for single-valued
fields and ``ChoicesAnswer`` for multi-select fields. The tag is decided by the
field's declared type, so readers never need to type-check the raw value.
"""
from collections.abc import Mapping
from typing import Annotated, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .form_builder import FieldType, FormTemplate

RawAnswer = Union[str, List[str]]


class TextAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str

    @property
    def raw(self) -> str:
        return self.text

    def display(self) -> str:
        return self.text


class ChoicesAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["choices"] = "choices"
    choices: List[str]

    @property
    def raw(self) -> List[str]:
        return list(self.choices)

    def display(self) -> str:
        return ", ".join(self.choices)


AnswerValue = Annotated[Union[TextAnswer, ChoicesAnswer], Field(discriminator="kind")]


def is_filled(value: Optional[RawAnswer]) -> bool:
    """A raw value counts as an answer unless it is missing or empty."""
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return len(value) > 0


class Answers(Mapping):
    """Field id -> answer mapping bound to one template.

    Reads through the Mapping interface return raw values (``str`` or
    ``list[str]``) so the pure progress/validation helpers accept either this
    class or a plain dict.
    """

    def __init__(self, template: FormTemplate, initial: Optional[Mapping] = None):
        self._template = template
        self._values: Dict[str, AnswerValue] = {}
        for field_id, value in (initial or {}).items():
            if template.get_field(field_id) is None:
                # Drafts may outlive template edits; drop what no longer fits
                continue
            self.set(field_id, value)

    def set(self, field_id: str, value: Optional[RawAnswer]) -> Optional[AnswerValue]:
        """Store ``value`` for ``field_id``; an empty value clears the entry."""
        form_field = self._template.require_field(field_id)
        if not is_filled(value):
            self._values.pop(field_id, None)
            return None

        if form_field.type == FieldType.MULTI_SELECT:
            if isinstance(value, str):
                choices = [part.strip() for part in value.split(",") if part.strip()]
            else:
                choices = [str(part) for part in value]
            tagged = ChoicesAnswer(choices=choices)
        else:
            text = value if isinstance(value, str) else ", ".join(str(part) for part in value)
            tagged = TextAnswer(text=text)

        self._values[field_id] = tagged
        return tagged

    def clear(self, field_id: str) -> None:
        self._template.require_field(field_id)
        self._values.pop(field_id, None)

    def value(self, field_id: str) -> Optional[AnswerValue]:
        return self._values.get(field_id)

    def to_dict(self) -> Dict[str, RawAnswer]:
        return {field_id: tagged.raw for field_id, tagged in self._values.items()}

    def __getitem__(self, field_id: str) -> RawAnswer:
        return self._values[field_id].raw

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Answers({self.to_dict()!r})"
