"""Structured logging helpers (recipient-safe)."""

from typing import Any


def build_log_context(
    *,
    campaign_id: str | None = None,
    task_id: str | None = None,
    source: str | None = None,
    action: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict suitable for ``extra=``."""
    context: dict[str, Any] = {}
    if campaign_id:
        context["campaign_id"] = campaign_id
    if task_id:
        context["task_id"] = task_id
    if source:
        context["source"] = source
    if action:
        context["action"] = action
    return context


def mask_email(email: str | None) -> str:
    """Mask a recipient address for process logs."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."
