"""Pure functions that turn alerts into notification payloads and channel bodies."""

from __future__ import annotations

from html import escape as html_escape
from typing import Any

from apiwatch.core.config import EscalationLevel
from apiwatch.core.types import Alert, Channel, Priority, Target

# Discord embed colours keyed by alert level.
_DISCORD_COLORS: dict[str, int] = {
    Priority.P1.value: 0xE74C3C,  # red
    Priority.P2.value: 0xF39C12,  # orange
    Priority.P3.value: 0x3498DB,  # blue
}
_DISCORD_DEFAULT_COLOR = 0x95A5A6

# Payload keys rendered as fields rather than in the headline.
_HEADLINE_KEYS = frozenset({"title", "message", "level"})


# ── Payloads ────────────────────────────────────────────────────


def alert_payload(alert: Alert, target: Target | None) -> dict[str, Any]:
    """Channel-independent payload stored on a NotificationRecord."""
    return {
        "title": alert.title,
        "message": alert.message,
        "level": alert.level.value,
        "targetPath": target.path if target else "",
        "targetMethod": (target.method if target else "") or "GET",
        "status": alert.status.value,
    }


def escalation_payload(
    alert: Alert, target: Target | None, escalation: EscalationLevel
) -> dict[str, Any]:
    payload = alert_payload(alert, target)
    payload["escalationLevel"] = escalation.level
    payload["escalationAfterMinutes"] = escalation.after_minutes
    return payload


def channel_test_payload(channel: Channel, operator: str) -> dict[str, Any]:
    return {
        "title": "Channel Test",
        "message": f"Test message to {channel.name or channel.id}",
        "level": "info",
        "operator": operator,
    }


# ── Channel bodies ──────────────────────────────────────────────


def format_text(payload: dict[str, Any]) -> str:
    """One-line plain text, e.g. ``[P1] Orders 5xx avg errorRate 12 > 5``."""
    level = payload.get("level") or "info"
    title = payload.get("title") or ""
    message = payload.get("message") or ""
    return f"[{level}] {title} {message}".strip()


def _extra_fields(payload: dict[str, Any]) -> dict[str, str]:
    return {
        k: str(v)
        for k, v in payload.items()
        if k not in _HEADLINE_KEYS and v not in (None, "")
    }


def format_slack(payload: dict[str, Any]) -> dict[str, Any]:
    return {"text": format_text(payload)}


def format_wechat(payload: dict[str, Any]) -> dict[str, Any]:
    return {"msgtype": "text", "text": {"content": format_text(payload)}}


def format_discord(payload: dict[str, Any]) -> dict[str, Any]:
    level = str(payload.get("level") or "info")
    embed: dict[str, Any] = {
        "title": f"[{level}] {payload.get('title') or ''}".strip(),
        "color": _DISCORD_COLORS.get(level, _DISCORD_DEFAULT_COLOR),
    }
    if payload.get("message"):
        embed["description"] = payload["message"]
    fields = [
        {"name": k, "value": v, "inline": True}
        for k, v in _extra_fields(payload).items()
    ]
    if fields:
        embed["fields"] = fields
    return {"embeds": [embed]}


def format_telegram(payload: dict[str, Any], chat_id: str) -> dict[str, Any]:
    level = payload.get("level") or "info"
    parts = [f"<b>[{html_escape(str(level))}] {html_escape(str(payload.get('title') or ''))}</b>"]
    if payload.get("message"):
        parts.append(html_escape(str(payload["message"])))
    extra = _extra_fields(payload)
    if extra:
        parts.append(
            "\n".join(
                f"  <code>{html_escape(k)}</code>: {html_escape(v)}" for k, v in extra.items()
            )
        )
    return {"chat_id": chat_id, "text": "\n".join(parts), "parse_mode": "HTML"}
