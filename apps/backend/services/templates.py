"""Placeholder substitution for message templates."""
from __future__ import annotations

import re

from apps.backend.constants import Channel
from apps.backend.models.message import MessageTemplate

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def substitute_variables(text: str | None, variables: dict | None) -> str | None:
    """Replace {{name}} with variables[name]; unknown names stay as written."""
    if text is None or not variables:
        return text

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, text)


def template_content(template: MessageTemplate, channel: str) -> dict | None:
    """Channel-specific subject/body/html of a template, None if it has no body for the channel."""
    ch = Channel(channel)
    if ch == Channel.SMS:
        content = {"subject": None, "body": template.sms_body, "html_body": None}
    elif ch == Channel.EMAIL:
        content = {
            "subject": template.email_subject,
            "body": template.email_body,
            "html_body": template.email_html_body,
        }
    elif ch == Channel.PUSH:
        content = {"subject": template.push_title, "body": template.push_body, "html_body": None}
    else:
        content = {"subject": template.in_app_title, "body": template.in_app_body, "html_body": None}
    if not content["body"]:
        return None
    return content
