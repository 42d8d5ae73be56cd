from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from caseflow.domain.types import (
    FIELD_EVIDENCE,
    FIELD_ORDER_REFERENCE,
    FIELD_PROMO_CODES,
    FIELD_REASON,
    FIELD_SUBSCRIPTION_ACTION,
    FIELD_SUBSCRIPTION_REFERENCE,
    IntentType,
)


TAG_INFO_REQUEST = "info_request"
TAG_FOLLOW_UP = "follow_up"
TAG_APPROVAL = "approval"
TAG_DENIAL = "denial"
TAG_ACTION_APOLOGY = "action_apology"
TAG_USAGE_WARNING = "usage_warning"
TAG_USAGE_CUTOFF = "usage_cutoff"

_SIGN_OFF = "Best regards,\nCustomer Service Team"

_FIELD_PROMPTS = {
    FIELD_ORDER_REFERENCE: "your order number (e.g., #12345 or HFB-ABC123)",
    FIELD_REASON: "the reason for your request",
    FIELD_EVIDENCE: "photos of the damaged or defective items",
    FIELD_PROMO_CODES: "the promo code you tried to use",
    FIELD_SUBSCRIPTION_REFERENCE: "your subscription number",
    FIELD_SUBSCRIPTION_ACTION: "whether you want to pause, resume or cancel your subscription",
}

_INTENT_LABELS = {
    IntentType.RETURN_REQUEST: "return request",
    IntentType.PROMO_CODE_ISSUE: "promo code request",
    IntentType.SUBSCRIPTION_CHANGE: "subscription request",
    IntentType.UNKNOWN: "request",
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    template_tag: str


def _field_list(fields: list[str]) -> str:
    return "\n".join(f"• {_FIELD_PROMPTS.get(name, name.replace('_', ' '))}" for name in sorted(fields))


def info_request(intent: IntentType, missing_fields: list[str], *, follow_up: bool = False) -> RenderedMessage:
    label = _INTENT_LABELS.get(intent, "request")
    if follow_up:
        opening = f"We still need a little more information to complete your {label}:"
    else:
        opening = (
            f"Thank you for contacting us about your {label}. To process it quickly, "
            "we need a bit more information:"
        )
    body = (
        f"Dear Customer,\n\n{opening}\n\n{_field_list(missing_fields)}\n\n"
        "Please reply to this email with the requested information, and we'll review it right away.\n\n"
        f"{_SIGN_OFF}"
    )
    return RenderedMessage(
        subject=f"{label.capitalize()} - Additional Information Needed",
        body=body,
        template_tag=TAG_FOLLOW_UP if follow_up else TAG_INFO_REQUEST,
    )


def approval(
    intent: IntentType,
    *,
    reference: str | None,
    action_type: str | None,
    amount: Decimal | None,
    instructions: str | None = None,
) -> RenderedMessage:
    label = _INTENT_LABELS.get(intent, "request")
    ref_text = f" for #{reference}" if reference else ""
    if action_type == "refund" and amount is not None:
        detail = (
            f"A refund of ${amount:.2f} has been processed and will appear on your original "
            "payment method within 3-5 business days."
        )
    elif action_type == "pause_subscription":
        detail = "Your subscription has been paused. You can resume it at any time by replying to this email."
    elif action_type == "resume_subscription":
        detail = "Your subscription is active again."
    elif action_type == "cancel_subscription":
        detail = "Your subscription has been cancelled."
    else:
        detail = "Your request has been approved and our team will complete it shortly."
    parts = [f"Dear Customer,\n\nYour {label}{ref_text} has been approved.", detail]
    if instructions:
        parts.append(instructions)
    parts.append(f"Thank you for your business.\n\n{_SIGN_OFF}")
    return RenderedMessage(
        subject=f"{label.capitalize()} Approved{' - Order #' + reference if reference else ''}",
        body="\n\n".join(parts),
        template_tag=TAG_APPROVAL,
    )


def denial(intent: IntentType, *, reason: str, reference: str | None) -> RenderedMessage:
    label = _INTENT_LABELS.get(intent, "request")
    ref_text = f" for #{reference}" if reference else ""
    body = (
        f"Dear Customer,\n\nThank you for your {label}{ref_text}. Unfortunately we are unable to "
        f"process it automatically: {reason}.\n\n"
        "If you believe this is a mistake, reply to this email and a member of our team will take a look.\n\n"
        f"{_SIGN_OFF}"
    )
    return RenderedMessage(
        subject=f"Update on your {label}",
        body=body,
        template_tag=TAG_DENIAL,
    )


def action_apology(intent: IntentType, *, reference: str | None) -> RenderedMessage:
    label = _INTENT_LABELS.get(intent, "request")
    ref_text = f" for #{reference}" if reference else ""
    body = (
        f"Dear Customer,\n\nWe approved your {label}{ref_text}, but we ran into a problem completing it. "
        "We apologize for the inconvenience. A member of our team has been notified and will follow up "
        "with you personally.\n\n"
        f"{_SIGN_OFF}"
    )
    return RenderedMessage(
        subject=f"Update on your {label}",
        body=body,
        template_tag=TAG_ACTION_APOLOGY,
    )


def usage_warning(
    *,
    contact_name: str | None,
    service: str,
    period: str,
    used: int,
    limit: int,
) -> RenderedMessage:
    percent = round(used / limit * 100) if limit else 100
    body = (
        f"Hi {contact_name or 'there'},\n\n"
        f"You have used {used} of {limit} automated resolutions ({percent}%) for the current {period} "
        f"window of the {service} service. Automation will pause once the limit is reached.\n\n"
        "Upgrade your plan to keep resolving requests automatically.\n\n"
        f"{_SIGN_OFF}"
    )
    return RenderedMessage(
        subject="AI credits running low",
        body=body,
        template_tag=TAG_USAGE_WARNING,
    )


def usage_cutoff(
    *,
    contact_name: str | None,
    service: str,
    period: str,
    used: int,
    limit: int,
) -> RenderedMessage:
    body = (
        f"Hi {contact_name or 'there'},\n\n"
        f"Your {period} limit of {limit} automated resolutions for the {service} service has been reached "
        f"({used} used). New requests will be routed to your team until the window resets or you upgrade.\n\n"
        f"{_SIGN_OFF}"
    )
    return RenderedMessage(
        subject="AI credits exhausted",
        body=body,
        template_tag=TAG_USAGE_CUTOFF,
    )
