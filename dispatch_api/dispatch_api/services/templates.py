"""SMS message bodies for the scheduled jobs and inbound keyword replies."""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

DEFAULT_LOCATION = "Main Location"
DEFAULT_BOOKING_LINK = "Call us"
BIRTHDAY_DISCOUNT = "20% OFF"
COMEBACK_DISCOUNT = "15% OFF"


class TemplateData(BaseModel):
    """Values substituted into a template.  Missing values fall back to neutral text."""

    model_config = ConfigDict(frozen=True)

    customer_name: str = "there"
    business_name: str = ""
    appointment_date: str = ""
    appointment_time: str = ""
    service_name: str = ""
    location: str | None = None
    discount: str | None = None
    booking_url: str | None = None

    @property
    def location_text(self) -> str:
        return self.location or DEFAULT_LOCATION

    @property
    def booking_text(self) -> str:
        return self.booking_url or DEFAULT_BOOKING_LINK


def appointment_reminder_24h(data: TemplateData) -> str:
    return (
        "⏰ Tomorrow's Appointment Reminder\n\n"
        f"Hi {data.customer_name}! Your appointment at {data.business_name} "
        f"is tomorrow at {data.appointment_time}.\n\n"
        f"🎯 Service: {data.service_name}\n"
        f"📍 {data.location_text}\n\n"
        "We're excited to see you! ✨\n\n"
        "Reply RESCHEDULE if you need to change your appointment."
    )


def appointment_reminder_2h(data: TemplateData) -> str:
    return (
        "🕐 Appointment Reminder - 2 Hours\n\n"
        f"Hi {data.customer_name}! Your appointment at {data.business_name} "
        f"is in 2 hours ({data.appointment_time}).\n\n"
        f"🎯 {data.service_name}\n"
        f"📍 {data.location_text}\n\n"
        "See you soon! 💖\n\n"
        "Reply if you're running late."
    )


def birthday_special(data: TemplateData) -> str:
    return (
        f"🎂 Happy Birthday {data.customer_name}!\n\n"
        f"Celebrate your special day with us! {data.business_name} wants to treat you to something special.\n\n"
        f"🎁 Birthday Special: {data.discount or BIRTHDAY_DISCOUNT} your next service\n"
        "📅 Valid for 30 days from today\n"
        "🎯 Any service of your choice!\n\n"
        f"Book your birthday treat: {data.booking_text}\n\n"
        "Make it a beautiful day! 💖✨\n"
        "Reply STOP to opt out."
    )


def service_reminder(data: TemplateData) -> str:
    return (
        "💫 Time for Your Service!\n\n"
        f"Hi {data.customer_name}! It's been a while since your last visit to {data.business_name}.\n\n"
        "You deserve some pampering! ✨\n\n"
        f"🎁 Come back special: {data.discount or COMEBACK_DISCOUNT} your next service\n"
        f"📱 Book easily: {data.booking_text}\n\n"
        "We miss you! 💖\n"
        "Reply STOP to opt out."
    )


def no_show_followup(data: TemplateData) -> str:
    return (
        "😔 We Missed You Today\n\n"
        f"Hi {data.customer_name}, we had your appointment reserved at {data.appointment_time} "
        "today but didn't see you.\n\n"
        "We hope everything is okay! 💖\n\n"
        f"📱 Reschedule anytime: {data.booking_text}\n"
        "💡 Tip: Set a reminder 2 hours before your appointment\n\n"
        "Looking forward to seeing you soon! ✨"
    )


TEMPLATES: dict[str, Callable[[TemplateData], str]] = {
    "reminder_24h": appointment_reminder_24h,
    "reminder_2h": appointment_reminder_2h,
    "birthday": birthday_special,
    "service_reminder": service_reminder,
    "no_show_followup": no_show_followup,
}


def render(template: str, data: TemplateData) -> str:
    """Render the named template.

    Raises
    ------
    KeyError
        If *template* is not registered.
    """
    try:
        builder = TEMPLATES[template]
    except KeyError:
        raise KeyError(f"Unknown SMS template {template!r}; expected one of {sorted(TEMPLATES)}") from None
    return builder(data)


# ---------------------------------------------------------------------------
# Inbound keyword replies
# ---------------------------------------------------------------------------

OPT_OUT_REPLY = (
    "You have been unsubscribed and will receive no further messages from this number. Reply START to resubscribe."
)
OPT_IN_REPLY = "You have been resubscribed to messages from {business_name}. Reply STOP to opt out at any time."
HELP_REPLY = (
    "For immediate assistance, please call {business_name}. "
    "Reply STOP to opt out or START to resubscribe. Msg & data rates may apply."
)
