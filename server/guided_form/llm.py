import json
import re
import logging
from typing import Any, Dict, Optional

import google.generativeai as genai

from .config import Settings, settings as default_settings
from .extraction import DEFAULT_STRATEGIES, Extracted, ExtractionStrategy, ValueExtractor
from .form_builder import FieldType, FormField

logger = logging.getLogger(__name__)

# ---- SYSTEM PROMPT ----
SYSTEM = """
You extract a single form field value from something a user said out loud.

### Rules:
- The input is JSON with the field definition and the user's utterance.
- Return the value exactly as it should be typed into the form.
- Emails: convert spoken forms ("at", "dot", "underscore") into a real address.
- Dates: use YYYY-MM-DD.
- Phone numbers and numbers: digits only, keep a leading + for phone numbers.
- Select fields: return the option "value", never the label. Multi-select fields return a list.
- If the utterance does not contain a value for the field, return null.

### STRICT Response format (always JSON only, no text outside JSON):
{ "value": <string | list of strings | null> }
Return ONLY the JSON object. Do not add ```json or any extra text.
"""


class GeminiExtractionStrategy:
    """Asks Gemini for the field value, falling back to a heuristic strategy."""

    def __init__(
        self,
        fallback: Optional[ExtractionStrategy] = None,
        model_name: str = "gemini-2.0-flash-lite",
        api_key: Optional[str] = None,
        model: Any = None,
    ):
        self.fallback = fallback
        if model is not None:
            self.model = model
            return
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY missing in environment.")
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name=model_name, system_instruction=SYSTEM)

    def _extract_json(self, text: str) -> Dict[str, Any]:
        """Directly parse JSON, fallback if wrapped in extra text."""
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            match = re.search(r"\{.*\}", text, re.DOTALL)
            if match:
                try:
                    return json.loads(match.group(0))
                except json.JSONDecodeError:
                    pass
            logger.warning(f"Gemini returned non-JSON response: {text[:120]}")
            return {"value": None}

    def _ask(self, utterance: str, field: FormField) -> Optional[Extracted]:
        context = {
            "field": {
                "id": field.id,
                "label": field.label,
                "type": field.type.value,
                "options": [opt.model_dump() for opt in field.options or []],
            },
            "user_message": utterance,
        }
        response = self.model.generate_content(
            json.dumps(context),
            generation_config={
                "temperature": 0.1,
                "top_p": 0.9,
            },
        )
        parsed = self._extract_json((response.text or "").strip())
        value = parsed.get("value") if isinstance(parsed, dict) else None

        if isinstance(value, list):
            value = [str(v).strip() for v in value if str(v).strip()]
            if field.type != FieldType.MULTI_SELECT:
                value = value[0] if value else None
        elif value is not None:
            value = str(value).strip()
        return value or None

    def extract(self, utterance: str, field: FormField) -> Optional[Extracted]:
        try:
            value = self._ask(utterance, field)
        except Exception as e:
            logger.error(f"Gemini extraction failed for field {field.id}: {e}")
            value = None

        if value is None and self.fallback is not None:
            return self.fallback.extract(utterance, field)
        return value


def build_extractor(settings: Settings = default_settings) -> ValueExtractor:
    """Extractor for the configured backend; heuristics unless Gemini is set up."""
    if settings.EXTRACTION_BACKEND.lower() != "gemini":
        return ValueExtractor()
    if not settings.GEMINI_API_KEY:
        logger.warning("EXTRACTION_BACKEND is gemini but GEMINI_API_KEY is not set; using heuristics")
        return ValueExtractor()

    strategies = {}
    for field_type in FieldType:
        strategies[field_type] = GeminiExtractionStrategy(
            fallback=DEFAULT_STRATEGIES.get(field_type),
            model_name=settings.GEMINI_MODEL,
            api_key=settings.GEMINI_API_KEY,
        )
    logger.info(f"Using Gemini extraction ({settings.GEMINI_MODEL})")
    return ValueExtractor(strategies)
