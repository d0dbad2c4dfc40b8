"""
Placeholder rendering for sequence step templates.

Templates use {{field}} placeholders. Fields resolve against the lead; the Spanish
names used by the content team (nombre, telefono, ...) are aliases of lead attributes.
"""

import re
from typing import Callable
from urllib.parse import quote

from serenata.models.lead import Lead

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
NEWLINES = re.compile(r"\s*[\r\n]+\s*")

FIELD_ALIASES = {
    "nombre": "name",
    "telefono": "phone",
    "fuente": "source",
    "estado": "status",
    "etiquetas": "labels",
}


def lead_context(lead: Lead | dict) -> dict:
    data = lead.model_dump() if isinstance(lead, Lead) else dict(lead)
    for alias, field in FIELD_ALIASES.items():
        if alias not in data and field in data:
            data[alias] = data[field]
    return data


def _value(context: dict, key: str) -> str:
    value = context.get(key)
    if value is None:
        return ""
    if key == "nombre":
        tokens = str(value).split()
        return tokens[0] if tokens else ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def render_template(template: str, lead: Lead | dict, encode: Callable[[str], str] | None = None) -> str:
    """Replace {{field}} placeholders; unknown fields render as an empty string."""
    if not template:
        return ""
    context = lead_context(lead)

    def replace(match: re.Match) -> str:
        value = _value(context, match.group(1))
        return encode(value) if encode else value

    return PLACEHOLDER.sub(replace, template)


def render_form_link(template: str, lead: Lead | dict) -> str:
    """Values are URL-encoded and the message collapses to a single line."""
    rendered = render_template(template, lead, encode=lambda v: quote(v, safe=""))
    return NEWLINES.sub(" ", rendered).strip()
