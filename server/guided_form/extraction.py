"""
Heuristic value extraction from conversational utterances.

Each field type has its own strategy object so a smarter implementation (see
``llm.GeminiExtractionStrategy``) can be dropped in per type. A strategy
returns None when it cannot find anything, which hands the utterance to the
generic cleanup.
"""
import re
import logging
from typing import Dict, List, Mapping, Optional, Protocol, Union

from .form_builder import FieldType, FormField

logger = logging.getLogger(__name__)

Extracted = Union[str, List[str]]

# Applied in order, each at most once
CONVERSATIONAL_PREFIXES = [
    re.compile(r"^(?:my|the|it'?s?|i'?m|i am|that'?s?|this is)\s+", re.IGNORECASE),
    re.compile(r"^(?:name is|called|email is|email address is|phone is|phone number is|number is)\s+", re.IGNORECASE),
    re.compile(r"^(?:address is|located at|live at|living at)\s+", re.IGNORECASE),
    re.compile(r"^(?:born on|birthday is|date is|dob is)\s+", re.IGNORECASE),
    re.compile(r"^(?:prefer|preference is|want|would like)\s+", re.IGNORECASE),
]
LEADING_ARTICLE = re.compile(r"^(?:a|an)\s+", re.IGNORECASE)

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
DOMAIN_PATTERN = re.compile(r"\b[a-z0-9-]+(?:\.[a-z0-9-]+)*\.(?:com|net|org|edu|gov|co|io|dev|ai|app|info|biz|us|uk|it)\b")
CONCATENATED_AT = re.compile(r"\b([a-z0-9._-]+?)at(" + DOMAIN_PATTERN.pattern[2:] + r")")
SPELLED_LETTERS = re.compile(r"\b[a-z](?:\s+[a-z]\b){2,}")

PHONE_PATTERN = re.compile(r"\+?[\d\s\-()]*\d[\d\s\-()]*")
NUMBER_PATTERN = re.compile(r"\d+")
DATE_PATTERNS = [
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}"),
    re.compile(
        r"(?:january|february|march|april|may|june|july|august|september|october|november|december)"
        r"\s+\d{1,2},?\s+\d{4}",
        re.IGNORECASE,
    ),
]
TRAILING_PUNCTUATION = re.compile(r"[.,;!?]+$")


def strip_conversational_prefixes(utterance: str) -> str:
    cleaned = utterance.strip()
    for prefix in CONVERSATIONAL_PREFIXES:
        cleaned = prefix.sub("", cleaned, count=1)
    return LEADING_ARTICLE.sub("", cleaned, count=1)


class ExtractionStrategy(Protocol):
    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        ...


class EmailStrategy:
    """Turns spoken e-mail addresses ("john at example dot com") into text form."""

    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        text = utterance.lower().strip()

        # "j o h n" -> "john"
        if SPELLED_LETTERS.search(text):
            text = re.sub(r"\b([a-z])\s+(?=[a-z]\b)", r"\1", text)

        text = re.sub(r"\s*\bat\s+(?:the\s+)?rate\b\s*", "@", text)
        text = re.sub(r"\s+at\s+", "@", text)
        text = re.sub(r"\s*\bdot\b\s*", ".", text)
        text = re.sub(r"\s*\bunderscore\b\s*", "_", text)
        text = re.sub(r"\s*([@.])\s*", r"\1", text)

        if "@" not in text:
            text = self._splice_domain(text)

        if "@" in text:
            # Spaces inside the local part are recognizer word breaks;
            # anything after the first domain word is trailing chatter
            local, _, domain = text.partition("@")
            domain_words = domain.split()
            text = local.replace(" ", "") + "@" + (domain_words[0] if domain_words else "")

        match = EMAIL_PATTERN.search(text)
        if match:
            return TRAILING_PUNCTUATION.sub("", match.group(0))
        return None

    @staticmethod
    def _splice_domain(text: str) -> str:
        concatenated = CONCATENATED_AT.search(text)
        if concatenated:
            return f"{concatenated.group(1)}@{concatenated.group(2)}"

        domain = DOMAIN_PATTERN.search(text)
        if not domain:
            return text

        before = re.sub(r"\s+", "", text[:domain.start()])
        if before:
            return f"{before}@{domain.group(0)}"

        # Domain came first ("example.com john"); use the longest remaining word
        words = [w for w in re.split(r"\s+", text[domain.end():]) if len(w) > 1]
        if words:
            return f"{max(words, key=len)}@{domain.group(0)}"
        return text


class PhoneStrategy:
    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        match = PHONE_PATTERN.search(utterance)
        return match.group(0).strip() if match else None


class NumberStrategy:
    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        match = NUMBER_PATTERN.search(utterance)
        return match.group(0) if match else None


class DateStrategy:
    """Finds the first recognisable date and returns it verbatim."""

    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        for pattern in DATE_PATTERNS:
            match = pattern.search(utterance)
            if match:
                return match.group(0)
        return None


class SelectStrategy:
    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        lowered = utterance.lower()
        matches = [
            opt.value
            for opt in field.options or []
            if opt.label.lower() in lowered or opt.value.lower() in lowered
        ]
        if not matches:
            return None
        if field.type == FieldType.MULTI_SELECT:
            return matches
        return matches[0]


def generic_cleanup(utterance: str, field: FormField) -> str:
    cleaned = TRAILING_PUNCTUATION.sub("", utterance.strip())
    if "name" in field.id.lower() or "name" in field.label.lower():
        cleaned = " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split())
    return cleaned


DEFAULT_STRATEGIES: Dict[FieldType, ExtractionStrategy] = {
    FieldType.EMAIL: EmailStrategy(),
    FieldType.PHONE: PhoneStrategy(),
    FieldType.NUMBER: NumberStrategy(),
    FieldType.DATE: DateStrategy(),
    FieldType.SINGLE_SELECT: SelectStrategy(),
    FieldType.MULTI_SELECT: SelectStrategy(),
}


class ValueExtractor:
    """Maps an utterance to a best-guess value for a field. Never raises."""

    def __init__(self, strategies: Optional[Mapping[FieldType, ExtractionStrategy]] = None):
        self.strategies: Dict[FieldType, ExtractionStrategy] = dict(DEFAULT_STRATEGIES)
        if strategies:
            self.strategies.update(strategies)

    def extract(self, utterance: str, field: FormField) -> Extracted:
        cleaned = strip_conversational_prefixes(utterance or "")
        strategy = self.strategies.get(field.type)
        if strategy is not None:
            try:
                value = strategy.extract(cleaned, field)
            except Exception as e:
                logger.warning(f"Extraction strategy for {field.type.value} failed on '{utterance}': {e}")
                value = None
            if value:
                return value
        return generic_cleanup(cleaned, field)


_default_extractor = ValueExtractor()


def extract_value(utterance: str, field: FormField) -> Extracted:
    return _default_extractor.extract(utterance, field)
