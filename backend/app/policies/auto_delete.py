"""Auto-delete schedule math for identities."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.errors import MissingCustomDays, ScheduleConflict, ValidationFailed
from app.models.identity import AutoDeletePreset

PRESET_DAYS = {
    AutoDeletePreset.ONE_DAY: 1,
    AutoDeletePreset.ONE_WEEK: 7,
    AutoDeletePreset.ONE_MONTH: 30,
}
MIN_CUSTOM_DAYS = 1
MAX_CUSTOM_DAYS = 365
WARNING_MARGIN = timedelta(days=1)


@dataclass
class ScheduleCheck:
    auto_delete_at: datetime | None
    expires_at: datetime | None
    warning: str | None = None


def effective_days(
    enabled: bool,
    preset: AutoDeletePreset | None,
    custom_days: int | None = None,
) -> int:
    """Number of days after which messages auto-delete; 0 when disabled."""
    if not enabled:
        return 0
    if preset is None:
        raise ValidationFailed("An auto-delete preset is required when enabled")
    if preset == AutoDeletePreset.CUSTOM:
        if custom_days is None:
            raise MissingCustomDays(
                "Custom days is required when the custom preset is selected"
            )
        if not MIN_CUSTOM_DAYS <= custom_days <= MAX_CUSTOM_DAYS:
            raise ValidationFailed(
                f"Custom days must be between {MIN_CUSTOM_DAYS} and {MAX_CUSTOM_DAYS}"
            )
        return custom_days
    return PRESET_DAYS[preset]


def validate_expiry(expires_at: datetime | None, now: datetime) -> None:
    if expires_at is not None and expires_at <= now:
        raise ValidationFailed("Expiration date must be in the future")


def check_schedule(
    days: int,
    expires_at: datetime | None,
    now: datetime,
) -> ScheduleCheck:
    """
    Auto-delete must not outlive the identity.

    Raises ScheduleConflict when now + days lands after expires_at. A margin
    of one day or less is allowed but reported as a warning.
    """
    if days <= 0:
        return ScheduleCheck(auto_delete_at=None, expires_at=expires_at)

    auto_delete_at = now + timedelta(days=days)
    if expires_at is None:
        return ScheduleCheck(auto_delete_at=auto_delete_at, expires_at=None)

    if auto_delete_at > expires_at:
        raise ScheduleConflict(
            f"Auto-delete period ({days} days) extends past identity expiration",
            auto_delete_at=auto_delete_at,
            expires_at=expires_at,
        )

    warning = None
    if expires_at - auto_delete_at <= WARNING_MARGIN:
        warning = (
            "Auto-delete is set close to identity expiration; "
            "messages may be deleted shortly before the identity expires"
        )
    return ScheduleCheck(
        auto_delete_at=auto_delete_at, expires_at=expires_at, warning=warning
    )


def describe(enabled: bool, preset: AutoDeletePreset | None, days: int) -> str:
    if not enabled or days <= 0:
        return "Messages are kept until deleted manually"
    if preset == AutoDeletePreset.ONE_DAY:
        return "Messages auto-delete after 1 day"
    if preset == AutoDeletePreset.ONE_WEEK:
        return "Messages auto-delete after 1 week"
    if preset == AutoDeletePreset.ONE_MONTH:
        return "Messages auto-delete after 1 month"
    return f"Messages auto-delete after {days} day{'s' if days != 1 else ''}"
