"""Placeholder substitution for campaign templates (pure, no I/O)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from campaign_dispatch.services.recipient_source import RecipientRef

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

RESERVED_FIELDS = frozenset({"email", "name"})

BASE_EMAIL_STYLES = """<style>
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif; line-height: 1.6; color: #374151; max-width: 100%; margin: 0; padding: 20px; }
  p { margin: 0 0 1em 0; line-height: 1.6; }
  h1, h2, h3, h4, h5, h6 { margin: 1.5em 0 0.5em 0; line-height: 1.3; }
  h1 { font-size: 2em; }
  h2 { font-size: 1.5em; }
  h3 { font-size: 1.25em; }
  ul, ol { margin: 1em 0; padding-left: 2em; }
  li { margin: 0.5em 0; }
  blockquote { margin: 1em 0; padding: 0.5em 1em; border-left: 4px solid #e5e7eb; background-color: #f9fafb; }
  a { color: #3b82f6; text-decoration: none; }
  strong { font-weight: 600; }
  em { font-style: italic; }
</style>"""

_HEAD_OPEN = re.compile(r"<head[^>]*>", re.IGNORECASE)


@dataclass(frozen=True)
class MessageTemplate:
    subject: str
    html_content: str
    is_rich_text: bool = False


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


# Upper hour bound (exclusive) -> greeting
TIME_OF_DAY_GREETINGS = (
    (6, "Good night"),
    (9, "Rise and shine"),
    (12, "Good morning"),
    (14, "Good midday"),
    (18, "Good afternoon"),
    (22, "Good evening"),
    (24, "Good night"),
)


def default_greeting(now: datetime) -> str:
    """Time-of-day greeting used when the caller supplies none."""
    for upper, greeting in TIME_OF_DAY_GREETINGS:
        if now.hour < upper:
            return greeting
    return TIME_OF_DAY_GREETINGS[-1][1]


def build_replacements(
    recipient: RecipientRef, *, now: datetime, greeting: str | None = None
) -> dict[str, str]:
    """Map placeholder name to value. Recipient fields may override built-ins except email/name."""
    name = recipient.name or ""
    values = {
        "recipient_name": name,
        "name": name,
        "email": recipient.email or "",
        "greeting": greeting if greeting is not None else default_greeting(now),
        "timestamp": now.strftime("%Y-%m-%d %H:%M:%S"),
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
    }
    for key, value in recipient.fields.items():
        if key in RESERVED_FIELDS:
            continue
        values[key] = "" if value is None else str(value)
    return values


def substitute(text: str, replacements: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` markers; unknown markers are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in replacements:
            return replacements[key]
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def wrap_with_styles(html: str) -> str:
    if "<html" in html.lower() or "<body" in html.lower():
        if _HEAD_OPEN.search(html):
            return _HEAD_OPEN.sub(lambda m: m.group(0) + BASE_EMAIL_STYLES, html, count=1)
        return html
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        '<meta charset="utf-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"{BASE_EMAIL_STYLES}\n</head>\n<body>\n{html}\n</body>\n</html>"
    )


def render_message(
    template: MessageTemplate,
    recipient: RecipientRef,
    *,
    now: datetime,
    greeting: str | None = None,
) -> RenderedMessage:
    replacements = build_replacements(recipient, now=now, greeting=greeting)
    subject = substitute(template.subject, replacements)
    body = substitute(template.html_content, replacements)
    if template.is_rich_text:
        body = wrap_with_styles(body)
    return RenderedMessage(subject=subject, body=body)
