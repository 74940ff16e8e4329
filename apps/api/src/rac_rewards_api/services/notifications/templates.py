"""Notification templates for membership lifecycle events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from rac_rewards_api.services.membership.events import LifecycleNotice


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _format_ratio(value: Any) -> str | None:
    try:
        ratio = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return f"{(ratio * 100).normalize():f}%"


def _format_amount(value: Any) -> str | None:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return f"{amount.quantize(Decimal('0.01'))} USDT"


def _render(
    *,
    subject: str,
    greeting: str,
    paragraphs: Iterable[str],
    highlights: Iterable[str] = (),
) -> RenderedTemplate:
    paragraphs = list(paragraphs)
    highlights = [line for line in highlights if line]

    text_lines = [greeting, ""]
    text_lines.extend(paragraphs)
    if highlights:
        text_lines.append("")
        text_lines.extend(f"- {line}" for line in highlights)
    text_lines.extend(["", "The RAC Rewards Team"])

    highlight_html = ""
    if highlights:
        items = "".join(f"<li>{html.escape(line)}</li>" for line in highlights)
        highlight_html = f"<ul>{items}</ul>"
    paragraph_html = "".join(f"<p>{html.escape(paragraph)}</p>" for paragraph in paragraphs)
    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    {paragraph_html}
    {highlight_html}
    <p>The RAC Rewards Team</p>
  </body>
</html>"""

    return RenderedTemplate(subject=subject, text_body="\n".join(text_lines), html_body=html_body)


def _greeting(contact_name: str | None) -> str:
    return f"Hi {contact_name}," if contact_name else "Hi there,"


def render_membership_created(notice: LifecycleNotice, *, contact_name: str | None) -> RenderedTemplate:
    serial = notice.metadata.get("serialNumber")
    custody = str(notice.metadata.get("custodyMode") or "").replace("_", "-")
    return _render(
        subject=f"Your {notice.membership_name} membership is ready",
        greeting=_greeting(contact_name),
        paragraphs=[
            f"Welcome to RAC Rewards! Your {notice.membership_name} membership has been minted.",
            "Every purchase with your card now earns reward points.",
        ],
        highlights=[
            f"Serial number: #{serial}" if serial else "",
            f"Custody: {custody}" if custody else "",
        ],
    )


def render_membership_upgraded(notice: LifecycleNotice, *, contact_name: str | None) -> RenderedTemplate:
    original = _format_ratio(notice.metadata.get("originalRatio"))
    upgraded = _format_ratio(notice.metadata.get("newRatio"))
    return _render(
        subject=f"Your {notice.membership_name} membership has been upgraded",
        greeting=_greeting(contact_name),
        paragraphs=[f"Your {notice.membership_name} membership is now upgraded."],
        highlights=[
            f"Earn ratio: {original} -> {upgraded}" if original and upgraded else "",
        ],
    )


def render_membership_evolved(notice: LifecycleNotice, *, contact_name: str | None) -> RenderedTemplate:
    total = _format_amount(notice.metadata.get("totalInvestment"))
    bonus = _format_ratio(notice.metadata.get("evolutionBonusRatio"))
    return _render(
        subject=f"Your {notice.membership_name} membership has evolved",
        greeting=_greeting(contact_name),
        paragraphs=[
            f"Congratulations! Your investments evolved your {notice.membership_name} membership.",
            "Evolved memberships receive a bonus on marketplace investments.",
        ],
        highlights=[
            f"Total invested: {total}" if total else "",
            f"Investment bonus: {bonus}" if bonus else "",
        ],
    )


def render_membership_verified(notice: LifecycleNotice, *, contact_name: str | None) -> RenderedTemplate:
    wallet = notice.metadata.get("walletRef")
    return _render(
        subject=f"Wallet verified for your {notice.membership_name} membership",
        greeting=_greeting(contact_name),
        paragraphs=[
            f"We confirmed that your wallet holds your {notice.membership_name} membership.",
        ],
        highlights=[f"Wallet: {wallet}" if wallet else ""],
    )
