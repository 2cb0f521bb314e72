"""
Column types that behave the same on PostgreSQL and SQLite.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, TypeDecorator

from libs.common.datetime_utils import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp column.

    PostgreSQL keeps the offset; SQLite drops it, so values are normalised
    to UTC on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return value
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return value
        return ensure_utc(value)
