"""
utils.py
2024-03-12 ZD

Small helpers shared across modules.
"""

from datetime import datetime

from pytz import timezone


def get_time() -> str:
    """Returns the current time"""
    tz = timezone("US/Eastern")
    now = datetime.now(tz)
    dt_string = now.strftime("%Y%m%d_T%H%M%S")
    return dt_string
