"""Profile record and pre-population of empty form fields from it."""
import re
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel

from .answers import Answers
from .form_builder import FieldType, FormTemplate

logger = logging.getLogger(__name__)


class UserProfile(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    company_name: Optional[str] = None
    country: Optional[str] = None
    job_title: Optional[str] = None


ZIP_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
STATE_RE = re.compile(r"\b([A-Z]{2})\b")
STATE_ZIP_RE = re.compile(r"([A-Z]{2})\s+(\d{5}(?:-\d{4})?)")
CITY_STATE_ZIP_RE = re.compile(r"([A-Za-z\s]+),?\s+([A-Z]{2})\s+(\d{5}(?:-\d{4})?)")


def parse_address_components(full_address: Optional[str]) -> Dict[str, str]:
    """Split a US-style "street, city, ST 12345" address into its parts.

    Only the components that could be recognised are returned.
    """
    if not full_address:
        return {}

    components: Dict[str, str] = {}
    zip_match = ZIP_RE.search(full_address)
    if zip_match:
        components["zip"] = zip_match.group(0)

    parts = [p.strip() for p in full_address.split(",")]
    if len(parts) >= 3:
        components["street"] = parts[0]
        state_zip = STATE_ZIP_RE.search(parts[-1])
        if state_zip:
            components["state"] = state_zip.group(1)
            components["zip"] = state_zip.group(2)
            components["city"] = parts[-2]
        else:
            state = STATE_RE.search(parts[-2])
            if state:
                components["state"] = state.group(1)
                components["city"] = parts[-3] if len(parts) > 3 else STATE_RE.sub("", parts[-2]).strip()
            else:
                components["city"] = parts[-2]
    elif len(parts) == 2:
        components["street"] = parts[0]
        city_state_zip = CITY_STATE_ZIP_RE.search(parts[1])
        if city_state_zip:
            components["city"] = city_state_zip.group(1).strip()
            components["state"] = city_state_zip.group(2)
            components["zip"] = city_state_zip.group(3)

    return components


def _category(text: str) -> Optional[str]:
    """Map a field id or label to the profile category it asks for."""
    t = text.lower()
    if "company" in t and ("name" in t or "legal" in t):
        return "company_name"
    if "country" in t:
        return "country"
    if "job" in t and "title" in t:
        return "job_title"
    if "emergency" in t and "name" in t:
        return "emergency_contact_name"
    if "emergency" in t and "phone" in t:
        return "emergency_contact_phone"
    if "name" in t and "username" not in t and "company" not in t and "emergency" not in t:
        return "full_name"
    if "email" in t and "company" not in t:
        return "email"
    if "phone" in t and "company" not in t and "emergency" not in t:
        return "phone"
    if "address" in t or "street" in t:
        return "address"
    if "city" in t:
        return "city"
    if "state" in t:
        return "state"
    if "zip" in t or "postal" in t:
        return "zip"
    if "birth" in t or "dob" in t:
        return "date_of_birth"
    return None


def prepopulate_answers(template: FormTemplate, answers: Answers, profile: Optional[UserProfile]) -> List[str]:
    """Copy matching profile values into empty fields; returns the filled ids."""
    if profile is None:
        return []

    address_parts = parse_address_components(profile.address)
    filled: List[str] = []

    for field in template.all_fields():
        if field.id in answers or field.type == FieldType.MULTI_SELECT:
            continue

        category = _category(field.id) or _category(field.label)
        if category is None:
            continue

        if category in ("city", "state", "zip"):
            value = address_parts.get(category)
        else:
            value = getattr(profile, category)

        if value:
            answers.set(field.id, value)
            filled.append(field.id)

    if filled:
        logger.info(f"Pre-populated {len(filled)} field(s) from profile: {filled}")
    return filled
