"""
Column types shared by the commerce models.

Line items are snapshotted onto invoices as a typed value. They are encoded
to JSON text only at the storage boundary; business code works with
``LineItem`` instances.
"""
import json
from datetime import datetime, timezone
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Text
from sqlalchemy.types import TypeDecorator

# JSON works with both SQLite and PostgreSQL
JSONType = JSON


@dataclass(frozen=True)
class LineItem:
    """Snapshot of one priced line. Not a live catalog reference."""
    name: str
    quantity: float
    unit_price: float
    total: float
    item_id: Optional[str] = None
    sku: Optional[str] = None
    image: Optional[str] = None
    discount: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class LineItemListType(TypeDecorator):
    """Stores ``List[LineItem]`` as JSON text."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[List[Any]], dialect) -> Optional[str]:
        if value is None:
            return None
        encoded = []
        for item in value:
            if not isinstance(item, LineItem):
                item = LineItem.from_dict(item)
            encoded.append(item.to_dict())
        return json.dumps(encoded, sort_keys=True)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[List[LineItem]]:
        if value is None:
            return None
        return [LineItem.from_dict(entry) for entry in json.loads(value)]


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; convert aware values on the way in."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
