"""
Timezone-aware datetime helpers.

MongoDB hands back naive datetimes unless the client is configured with
``tz_aware=True``; everything stored by this package is UTC, so naive values
are read as UTC.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union


class DateTimeUtils:
    """Centralized datetime utilities with timezone awareness."""

    @staticmethod
    def utc_now() -> datetime:
        """
        Get current UTC datetime with timezone awareness.

        Returns:
            datetime: Current UTC datetime with timezone information
        """
        return datetime.now(timezone.utc)

    @staticmethod
    def add_timedelta(dt: datetime, **kwargs) -> datetime:
        """Add a timedelta to ``dt`` while preserving its timezone."""
        return dt + timedelta(**kwargs)

    @staticmethod
    def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
        """
        Ensure datetime is timezone-aware.

        Args:
            dt: Datetime object to check
            default_tz: Timezone to attach to naive values (UTC when omitted)

        Returns:
            datetime: Timezone-aware datetime
        """
        if dt.tzinfo is None:
            return dt.replace(tzinfo=default_tz or timezone.utc)
        return dt

    @staticmethod
    def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """
        Check whether a deadline has passed.

        A missing deadline never expires.
        """
        if expires_at is None:
            return False
        current = now or DateTimeUtils.utc_now()
        return current > DateTimeUtils.ensure_timezone_aware(expires_at)

    @staticmethod
    def calculate_age(date_of_birth: Union[date, datetime], today: Optional[date] = None) -> int:
        """
        Age in whole years, counting a birthday only once it has been reached.

        Args:
            date_of_birth: Birth date (datetimes are reduced to their UTC date)
            today: Reference date, defaults to the current UTC date
        """
        if isinstance(date_of_birth, datetime):
            date_of_birth = DateTimeUtils.ensure_timezone_aware(date_of_birth).astimezone(timezone.utc).date()
        reference = today or DateTimeUtils.utc_now().date()
        age = reference.year - date_of_birth.year
        if (reference.month, reference.day) < (date_of_birth.month, date_of_birth.day):
            age -= 1
        return age


def utc_now() -> datetime:
    return DateTimeUtils.utc_now()


def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
    return DateTimeUtils.ensure_timezone_aware(dt, default_tz)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    return DateTimeUtils.is_expired(expires_at, now)


def calculate_age(date_of_birth: Union[date, datetime], today: Optional[date] = None) -> int:
    return DateTimeUtils.calculate_age(date_of_birth, today)
