from datetime import datetime, timedelta
from typing import Optional
import pytz
from dateutil import parser

from .config import config

def get_clinic_timezone(tz_name: Optional[str] = None):
    """Get the clinic timezone"""
    return pytz.timezone(tz_name or config.CLINIC_TIMEZONE)

def get_current_time(tz_name: Optional[str] = None) -> datetime:
    """Get current clinic-local datetime"""
    return datetime.now(get_clinic_timezone(tz_name))

def combine_date_time(date_str: str, time_str: str, tz_name: Optional[str] = None) -> datetime:
    """Combine YYYY-MM-DD and HH:MM strings into an aware clinic-local datetime"""
    naive = datetime.strptime(f"{date_str} {normalize_time(time_str)}", "%Y-%m-%d %H:%M")
    return get_clinic_timezone(tz_name).localize(naive)

def normalize_time(time_str: str) -> str:
    """Accept HH:MM or HH:MM:SS and return HH:MM"""
    parts = str(time_str).strip().split(":")
    if len(parts) == 3:
        return datetime.strptime(str(time_str).strip(), "%H:%M:%S").strftime("%H:%M")
    return datetime.strptime(str(time_str).strip(), "%H:%M").strftime("%H:%M")

def to_utc_iso(dt: datetime) -> str:
    """Serialise an aware datetime as UTC ISO-8601 so stored values sort lexically"""
    if dt.tzinfo is None:
        dt = get_clinic_timezone().localize(dt)
    return dt.astimezone(pytz.utc).isoformat()

def from_iso(iso: str) -> datetime:
    dt = parser.isoparse(iso)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt

def to_local(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    return dt.astimezone(get_clinic_timezone(tz_name))

def format_date(date_str: str) -> str:
    """Format YYYY-MM-DD for display, e.g. Mar 10, 2025"""
    if not date_str:
        return ""
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
        return f"{dt.strftime('%b')} {dt.day}, {dt.year}"
    except ValueError:
        return date_str

def format_time(time_str: str) -> str:
    """Format 24-hour HH:MM as 12-hour time, e.g. 2:00 PM"""
    if not time_str:
        return ""
    try:
        dt = datetime.strptime(normalize_time(time_str), "%H:%M")
        return f"{dt.hour % 12 or 12}:{dt.strftime('%M %p')}"
    except ValueError:
        return time_str

def parse_duration(value: str) -> timedelta:
    """Parse offsets such as '-24h', '-7d', '-90m' or '-1h30m' into a signed timedelta"""
    text = str(value).strip().lower()
    if not text:
        raise ValueError("empty duration")
    sign = -1 if text.startswith("-") else 1
    text = text.lstrip("+-")
    units = {"d": "days", "h": "hours", "m": "minutes", "s": "seconds"}
    kwargs = {}
    number = ""
    for ch in text:
        if ch.isdigit():
            number += ch
        elif ch in units and number:
            kwargs[units[ch]] = kwargs.get(units[ch], 0) + int(number)
            number = ""
        else:
            raise ValueError(f"invalid duration: {value}")
    if number or not kwargs:
        raise ValueError(f"invalid duration: {value}")
    return sign * timedelta(**kwargs)
