"""
Form template model - sections, fields and validation rules for guided intake forms
"""
import uuid
import time
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum


class UnknownTemplateError(LookupError):
    """Raised when a template id is not known to the template source"""


class UnknownFieldError(ValueError):
    """Raised when a field id does not belong to the session's template"""

    def __init__(self, field_id: str):
        super().__init__(f"Unknown field: {field_id}")
        self.field_id = field_id


class FieldType(str, Enum):
    """Field types a guided form can ask for"""
    SHORT_TEXT = "short_text"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    NUMBER = "number"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    LONG_TEXT = "long_text"

    @property
    def is_select(self) -> bool:
        return self in (FieldType.SINGLE_SELECT, FieldType.MULTI_SELECT)


class FieldOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str


class ValidationRule(BaseModel):
    """Validation rules for form fields"""
    model_config = ConfigDict(frozen=True)

    pattern: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    custom_error_message: Optional[str] = None


class FormField(BaseModel):
    """Form field definition"""
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    type: FieldType = FieldType.SHORT_TEXT
    required: bool = False

    # Options for choice-based fields
    options: Optional[List[FieldOption]] = None

    # Conversational prompt used when the assistant asks for this field
    prompt: Optional[str] = None
    placeholder: Optional[str] = None
    help_text: Optional[str] = None

    validation: Optional[ValidationRule] = None

    @field_validator("options", mode="before")
    @classmethod
    def _normalize_options(cls, value):
        # Plain string options are shorthand for value == label
        if not value:
            return value
        return [
            {"value": opt, "label": opt} if isinstance(opt, str) else opt
            for opt in value
        ]


class FormSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    fields: List[FormField] = Field(default_factory=list)


class FormTemplate(BaseModel):
    """Complete form definition, immutable once loaded"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    sections: List[FormSection]

    @model_validator(mode="after")
    def _unique_field_ids(self):
        seen = set()
        for section in self.sections:
            for form_field in section.fields:
                if form_field.id in seen:
                    raise ValueError(f"Duplicate field id: {form_field.id}")
                seen.add(form_field.id)
        return self

    def all_fields(self) -> List[FormField]:
        return [f for section in self.sections for f in section.fields]

    def get_field(self, field_id: str) -> Optional[FormField]:
        return next((f for f in self.all_fields() if f.id == field_id), None)

    def require_field(self, field_id: str) -> FormField:
        form_field = self.get_field(field_id)
        if form_field is None:
            raise UnknownFieldError(field_id)
        return form_field


class FormSubmission(BaseModel):
    """A submitted, validated set of answers"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    template_name: str
    answers: Dict[str, Any]
    summary: str
    submitted_at: float = Field(default_factory=time.time)


class FormStore:
    """In-memory template source and submission sink (replace with database in production)"""

    def __init__(self):
        self.templates: Dict[str, FormTemplate] = {}
        self.submissions: Dict[str, List[FormSubmission]] = {}

    def create_template(self, template_data: Dict[str, Any]) -> FormTemplate:
        """Register a new template"""
        template = FormTemplate(**template_data)
        self.templates[template.id] = template
        self.submissions.setdefault(template.id, [])
        return template

    def get_template(self, template_id: str) -> Optional[FormTemplate]:
        """Get template by ID"""
        return self.templates.get(template_id)

    def require_template(self, template_id: str) -> FormTemplate:
        template = self.get_template(template_id)
        if template is None:
            raise UnknownTemplateError(f"Template {template_id} not found")
        return template

    def list_templates(self) -> List[FormTemplate]:
        """List all templates"""
        return list(self.templates.values())

    def create_submission(self, template_id: str, answers: Dict[str, Any], summary: str) -> FormSubmission:
        """Record a final submission for a template"""
        template = self.require_template(template_id)
        submission = FormSubmission(
            template_id=template_id,
            template_name=template.name,
            answers=dict(answers),
            summary=summary,
        )
        self.submissions.setdefault(template_id, []).append(submission)
        return submission

    def get_submissions(self, template_id: str) -> List[FormSubmission]:
        """Get all submissions for a template"""
        return self.submissions.get(template_id, [])


# Predefined onboarding templates
SAMPLE_FORMS = {
    "client_onboarding": {
        "id": "client_onboarding",
        "name": "Client Onboarding",
        "description": "Kick-off details for a new client engagement",
        "sections": [
            {
                "id": "contact",
                "title": "Primary Contact",
                "fields": [
                    {"id": "full_name", "label": "Full Name", "type": "short_text", "required": True,
                     "prompt": "What is your full name?"},
                    {"id": "email", "label": "Email Address", "type": "email", "required": True,
                     "prompt": "What is your email address?"},
                    {"id": "phone", "label": "Phone Number", "type": "phone", "required": False,
                     "prompt": "What is your phone number?"},
                ],
            },
            {
                "id": "company",
                "title": "Company",
                "fields": [
                    {"id": "company_name", "label": "Company Name", "type": "short_text", "required": True,
                     "prompt": "What is your company name?"},
                    {"id": "job_title", "label": "Job Title", "type": "short_text", "required": False,
                     "prompt": "What is your job title?"},
                    {"id": "country", "label": "Country", "type": "short_text", "required": False,
                     "prompt": "What is your country?"},
                ],
            },
            {
                "id": "project",
                "title": "Project",
                "fields": [
                    {"id": "go_live_date", "label": "Go-Live Date", "type": "date", "required": True,
                     "prompt": "When would you like to go live?", "placeholder": "MM/DD/YYYY"},
                    {"id": "team_size", "label": "Team Size", "type": "number", "required": True,
                     "validation": {"min_value": 1, "max_value": 10000}},
                    {"id": "plan", "label": "Plan", "type": "single_select", "required": True,
                     "options": [
                         {"value": "starter", "label": "Starter"},
                         {"value": "growth", "label": "Growth"},
                         {"value": "enterprise", "label": "Enterprise"},
                     ],
                     "prompt": "Which plan are you signing up for?"},
                    {"id": "integrations", "label": "Integrations", "type": "multi_select", "required": False,
                     "options": ["Salesforce", "Slack", "Jira", "ServiceNow", "Smartsheet"]},
                    {"id": "notes", "label": "Additional Notes", "type": "long_text", "required": False,
                     "help_text": "Anything else the onboarding team should know"},
                ],
            },
        ],
    },
    "employee_onboarding": {
        "id": "employee_onboarding",
        "name": "Employee Onboarding",
        "description": "Personal and emergency details for new hires",
        "sections": [
            {
                "id": "personal",
                "title": "Personal Details",
                "fields": [
                    {"id": "full_name", "label": "Full Name", "type": "short_text", "required": True,
                     "prompt": "What is your full name?"},
                    {"id": "date_of_birth", "label": "Date of Birth", "type": "date", "required": True,
                     "prompt": "What is your date of birth?"},
                    {"id": "street_address", "label": "Street Address", "type": "short_text", "required": True,
                     "prompt": "What is your address?"},
                    {"id": "city", "label": "City", "type": "short_text", "required": True,
                     "prompt": "What is your city?"},
                    {"id": "state", "label": "State", "type": "short_text", "required": False,
                     "prompt": "What is your state?"},
                    {"id": "zip_code", "label": "Zip Code", "type": "short_text", "required": False,
                     "prompt": "What is your zip code?",
                     "validation": {"pattern": r"^\d{5}(-\d{4})?$",
                                    "custom_error_message": "Zip code must have 5 digits"}},
                ],
            },
            {
                "id": "emergency",
                "title": "Emergency Contact",
                "fields": [
                    {"id": "emergency_contact_name", "label": "Emergency Contact Name", "type": "short_text",
                     "required": True},
                    {"id": "emergency_contact_phone", "label": "Emergency Contact Phone", "type": "phone",
                     "required": True},
                ],
            },
            {
                "id": "role",
                "title": "Role",
                "fields": [
                    {"id": "department", "label": "Department", "type": "single_select", "required": True,
                     "options": ["Engineering", "Sales", "Finance", "Operations", "People"]},
                    {"id": "start_date", "label": "Start Date", "type": "date", "required": True},
                ],
            },
        ],
    },
}


def initialize_sample_forms(store: FormStore) -> None:
    """Initialize the form store with sample templates"""
    for template_data in SAMPLE_FORMS.values():
        store.create_template(template_data)
