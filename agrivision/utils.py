from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

import pandas as pd


def to_aware_utc(v: Optional[Union[str, datetime]]) -> datetime:
    """Convert input to an aware UTC datetime."""
    if v is None:
        return datetime.now(timezone.utc)
    if isinstance(v, datetime):
        return v.astimezone(timezone.utc) if v.tzinfo else v.replace(tzinfo=timezone.utc)
    ts = pd.to_datetime(v, errors="coerce", utc=True)
    if pd.isna(ts):
        raise ValueError(f"Unparseable datetime: {v!r}")
    return ts.to_pydatetime()


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Like to_aware_utc, but keeps None (SQLite hands back naive values)."""
    return None if v is None else to_aware_utc(v)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
