from datetime import datetime
from hems.core.config import settings

def institutional_year_suffix(now: datetime) -> str:
    """Two-digit suffix of the institutional year, which trails the Gregorian year by a fixed offset."""
    return f"{(now.year - settings.CALENDAR_YEAR_OFFSET) % 100:02d}"

def current_academic_year(now: datetime) -> int:
    return settings.CURRENT_ACADEMIC_YEAR or now.year
