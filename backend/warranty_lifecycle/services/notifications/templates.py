"""
Notification Templates

Renders the email and SMS content sent by the lifecycle engine:
- installer/inspector verification links
- customer activation link and activation reminders (#1 to #3)
- annual inspection reminders (eleven-month, thirty-day, due date)
"""
import os
from html import escape
from dataclasses import dataclass
from datetime import date
from typing import Optional

from ...models.db_models import ReminderType, RecordType


BRAND = "ERPS"


@dataclass
class RenderedMessage:
    """Content for one notification across channels."""
    subject: str
    html_body: str
    text_body: str
    sms_body: Optional[str] = None


def frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")


def vehicle_details(record) -> str:
    parts = [p for p in (record.make, record.model) if p]
    label = " ".join(parts) if parts else "your vehicle"
    if record.vin_number:
        label = f"{label} (VIN {record.vin_number})"
    return label


def _html(title: str, paragraphs, link: Optional[str] = None, link_label: str = "Open") -> str:
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    button = f'<p><a href="{escape(link)}">{escape(link_label)}</a></p>' if link else ""
    return (
        "<!DOCTYPE html><html><body>"
        f"<h2>{BRAND} - {escape(title)}</h2>{body}{button}"
        f"<p>Best regards,<br>{BRAND} Team</p>"
        "</body></html>"
    )


def _text(paragraphs, link: Optional[str] = None) -> str:
    lines = list(paragraphs)
    if link:
        lines.append(link)
    lines.append(f"Best regards,\n{BRAND} Team")
    return "\n\n".join(lines)


# =============================================================================
# VERIFICATION
# =============================================================================

def installer_verification(record, record_type: RecordType, token: str) -> RenderedMessage:
    """Link sent to the installer/inspector after submission."""
    kind = "warranty registration" if record_type == RecordType.WARRANTY else "annual inspection"
    link = f"{frontend_url()}/verify/{token}"
    vehicle = vehicle_details(record)
    paragraphs = [
        f"A {kind} for {vehicle} has been submitted and needs your verification.",
        "Please confirm or decline the submission using the link below.",
    ]
    return RenderedMessage(
        subject=f"{BRAND} {kind.title()} - Verification Required",
        html_body=_html("Verification Required", paragraphs, link, "Review Submission"),
        text_body=_text(paragraphs, link),
        sms_body=f"{BRAND}: please verify the {kind} for {vehicle}: {link}",
    )


def customer_activation(warranty, token: str, ttl_days: int = 30) -> RenderedMessage:
    """Activation link sent to the customer after installer verification."""
    link = f"{frontend_url()}/activate-warranty/{token}"
    name = warranty.customer_name or "Customer"
    vehicle = vehicle_details(warranty)
    paragraphs = [
        f"Dear {name},",
        f"Your {BRAND} installation on {vehicle} has been verified by the installer. "
        "Your warranty is now ready to be activated.",
        "To activate your warranty, review and accept the terms and conditions.",
        f"This activation link expires in {ttl_days} days. "
        "Annual inspections are required to maintain warranty coverage.",
    ]
    return RenderedMessage(
        subject=f"{BRAND} Warranty Activation - Action Required",
        html_body=_html("Your Warranty is Ready for Activation", paragraphs, link, "Activate My Warranty"),
        text_body=_text(paragraphs, link),
        sms_body=(
            f"{BRAND}: Hi {name}, your warranty for {vehicle} is ready. "
            f"Check your email to activate it: {link}"
        ),
    )


def activation_urgency(reminder_number: int) -> str:
    if reminder_number <= 1:
        return "Friendly Reminder"
    if reminder_number == 2:
        return "Second Reminder"
    return "Final Reminder - Action Required"


def activation_reminder(warranty, token: str, reminder_number: int) -> RenderedMessage:
    """Reminder to a customer who has not yet accepted the warranty terms."""
    link = f"{frontend_url()}/activate-warranty/{token}"
    name = warranty.customer_name or "Customer"
    vehicle = vehicle_details(warranty)
    urgency = activation_urgency(reminder_number)
    sms_urgency = {1: "Reminder", 2: "Second Reminder"}.get(reminder_number, "FINAL REMINDER")
    paragraphs = [
        f"Dear {name},",
        f"Your {BRAND} warranty for {vehicle} is waiting to be activated.",
        "Your warranty will NOT be active until you accept the terms.",
    ]
    return RenderedMessage(
        subject=f"{BRAND} Warranty Activation - {urgency}",
        html_body=_html(urgency, paragraphs, link, "Activate My Warranty"),
        text_body=_text(paragraphs, link),
        sms_body=(
            f"{BRAND} {sms_urgency}: Hi {name}, your warranty for {vehicle} is waiting "
            "to be activated. Please check your email and click the activation link."
        ),
    )


# =============================================================================
# ANNUAL INSPECTION REMINDERS
# =============================================================================

REMINDER_SUBJECTS = {
    ReminderType.ELEVEN_MONTH: f"{BRAND} Annual Inspection Due in 1 Month",
    ReminderType.THIRTY_DAY: f"URGENT: {BRAND} Annual Inspection Due in 30 Days",
    ReminderType.DUE_DATE: f"FINAL NOTICE: {BRAND} Annual Inspection Due TODAY",
}


def inspection_reminder(warranty, reminder_type: ReminderType, due: date) -> RenderedMessage:
    name = warranty.customer_name or "Customer"
    vehicle = vehicle_details(warranty)
    due_text = due.strftime("%d %B %Y")

    if reminder_type == ReminderType.ELEVEN_MONTH:
        lead = f"Your annual {BRAND} inspection for {vehicle} is due in one month, on {due_text}."
    elif reminder_type == ReminderType.THIRTY_DAY:
        lead = f"Your annual {BRAND} inspection for {vehicle} is due in 30 days, on {due_text}."
    else:
        lead = f"Your annual {BRAND} inspection for {vehicle} is due TODAY ({due_text})."

    paragraphs = [
        f"Dear {name},",
        lead,
        "Please book your inspection with an accredited installer. "
        "Missing the inspection and the grace period that follows will void your warranty.",
    ]
    return RenderedMessage(
        subject=REMINDER_SUBJECTS.get(reminder_type, f"{BRAND} Annual Inspection Reminder"),
        html_body=_html("Annual Inspection Reminder", paragraphs),
        text_body=_text(paragraphs),
    )
