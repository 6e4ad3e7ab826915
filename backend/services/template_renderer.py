"""
Template Renderer - localized title/body with {{dotted.path}} placeholders.

Placeholders are resolved against job.data with null-safe traversal; a missing
path renders as an empty string. Language falls back to the user's language,
then NOTIFICATION_DEFAULT_LANGUAGE, then "en".
"""
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = os.getenv("NOTIFICATION_DEFAULT_LANGUAGE", "vi")

PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


@dataclass
class RenderedPayload:
    title: str
    body: str
    action_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"title": self.title, "body": self.body}
        if self.action_url:
            payload["actionUrl"] = self.action_url
        return payload


def resolve_path(data: Any, path: str) -> Any:
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
        if current is None:
            return None
    return current


def render_string(template: str, data: Optional[Mapping[str, Any]]) -> str:
    """Substitute {{path}} placeholders from data. Missing values become ''."""
    if not template:
        return ""

    def _sub(match):
        value = resolve_path(data or {}, match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_sub, template)


def pick_localized(values: Optional[Mapping[str, str]], language: Optional[str]) -> str:
    values = values or {}
    for lang in (language, DEFAULT_LANGUAGE, "en"):
        if lang and values.get(lang):
            return values[lang]
    return ""


def render_template(template: Mapping[str, Any], data: Optional[Mapping[str, Any]], language: Optional[str]) -> RenderedPayload:
    """Render a notificationTemplates document for one recipient."""
    data = data or {}
    title = render_string(pick_localized(template.get("title"), language), data)
    body = render_string(pick_localized(template.get("body"), language), data)
    action_url = data.get("actionUrl")
    return RenderedPayload(title=title, body=body, action_url=str(action_url) if action_url else None)
