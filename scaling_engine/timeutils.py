"""
Time Helpers
============
Chuẩn hoá timestamps và durations về pandas types.

Quy ước:
    - Timestamp: pd.Timestamp naive UTC
    - Duration: pd.Timedelta (số = giây, string = pandas offset như '5min')
"""

import numbers
from datetime import datetime, timedelta
from typing import Union

import numpy as np
import pandas as pd

TimestampLike = Union[pd.Timestamp, datetime, str, float, int]
DurationLike = Union[pd.Timedelta, timedelta, str, float, int]


def to_timestamp(value: TimestampLike) -> pd.Timestamp:
    """
    Convert value thành pd.Timestamp naive UTC.

    Args:
        value: pd.Timestamp, datetime, ISO string hoặc epoch seconds

    Returns:
        pd.Timestamp không có timezone

    Example:
        >>> to_timestamp(0)
        Timestamp('1970-01-01 00:00:00')
    """
    if isinstance(value, bool):
        raise TypeError(f"Invalid timestamp: {value!r}")

    if isinstance(value, numbers.Real) and not isinstance(value, (pd.Timestamp, datetime)):
        ts = pd.Timestamp(float(value), unit="s")
    else:
        ts = pd.Timestamp(value)

    if ts is pd.NaT:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def to_timedelta(value: DurationLike) -> pd.Timedelta:
    """
    Convert value thành pd.Timedelta.

    Args:
        value: pd.Timedelta, timedelta, số giây, hoặc string ('90s', '5min', '8h')

    Returns:
        pd.Timedelta
    """
    if isinstance(value, bool):
        raise TypeError(f"Invalid duration: {value!r}")

    if isinstance(value, numbers.Real) and not isinstance(value, (pd.Timedelta, timedelta, np.timedelta64)):
        return pd.Timedelta(seconds=float(value))

    delta = pd.Timedelta(value)
    if delta is pd.NaT:
        raise ValueError(f"Invalid duration: {value!r}")
    return delta


def utc_now() -> pd.Timestamp:
    """Clock mặc định: thời điểm hiện tại, naive UTC."""
    return pd.Timestamp.now(tz="UTC").tz_localize(None)
