from jinja2 import Environment, BaseLoader, Undefined, Template
from jinja2.exceptions import TemplateError
from typing import Dict, Any, Optional
import logging

from models.lead import Lead

logger = logging.getLogger("automation_engine")

# Placeholders the message editor offers, mapped onto lead attributes.
PLACEHOLDER_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "programName": "program_interest",
    "city": "city",
    "country": "country",
    "leadId": "id",
    "status": "status",
    "stage": "stage",
}


class TemplateRenderer:
    def __init__(self):
        # Unknown placeholders render as an empty string instead of raising
        self.env = Environment(loader=BaseLoader(), undefined=Undefined, autoescape=False)
        self._template_cache: Dict[str, Template] = {}

    def _get_template(self, template_str: str) -> Template:
        if template_str not in self._template_cache:
            self._template_cache[template_str] = self.env.from_string(template_str)
        return self._template_cache[template_str]

    @staticmethod
    def build_context(lead: Lead, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Placeholder context for a lead, built from the attributes read when the
        step runs. Raw snake_case attributes and custom fields are exposed too.
        """
        attributes = lead.attributes()
        context: Dict[str, Any] = {}
        context.update(attributes.get("custom_fields") or {})
        context.update(attributes)
        for placeholder, attribute in PLACEHOLDER_FIELDS.items():
            value = attributes.get(attribute)
            context[placeholder] = "" if value is None else value
        context["leadName"] = lead.full_name
        if extra:
            context.update(extra)
        return context

    def render(self, template_str: Optional[str], context: Dict[str, Any]) -> str:
        if not template_str:
            return ""
        try:
            template = self._get_template(template_str)
            return template.render(**context)
        except TemplateError as e:
            logger.error(f"Error rendering template: {e}")
            raise ValueError(f"Template rendering failed: {e}")

    def render_value(self, value: Any, context: Dict[str, Any]) -> Any:
        """Renders strings nested anywhere in a dict/list payload."""
        if isinstance(value, str):
            return self.render(value, context)
        if isinstance(value, dict):
            return {key: self.render_value(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.render_value(item, context) for item in value]
        return value
