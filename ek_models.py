"""Record types produced by the classifieds extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Optional, Tuple

if TYPE_CHECKING:  # pragma: no cover
    from ek_config import EkConfig


@dataclass(frozen=True)
class Category:
    id: int
    name: str


ROOT_CATEGORY = Category(0, "All")
NO_TIME_SET = "no time set"


@dataclass(frozen=True)
class AdTime:
    """Either a resolved timestamp or the reason it could not be resolved."""

    value: Optional[datetime] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.value is None) == (self.error is None):
            raise ValueError("AdTime needs exactly one of value or error")

    @classmethod
    def resolved(cls, value: datetime) -> "AdTime":
        return cls(value=value)

    @classmethod
    def failed(cls, error: str) -> "AdTime":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class Ad:
    """One marketplace listing."""

    id: int
    headline: str = ""
    description: str = ""
    location: str = ""
    price: str = ""
    category: Category = ROOT_CATEGORY
    images: Tuple[str, ...] = ()
    additional_details: Dict[str, str] = field(default_factory=dict)
    vendor_id: str = ""
    vendor_name: str = ""
    time: AdTime = field(default_factory=lambda: AdTime.failed(NO_TIME_SET))

    def link(self, config: "EkConfig") -> str:
        return config.link_by_id(self.id)

    def search_string(self) -> str:
        return f"{self.headline.lower()} {self.description.lower()}"

    def to_record(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "headline": self.headline,
            "description": self.description,
            "location": self.location,
            "price": self.price,
            "category": {"id": self.category.id, "name": self.category.name},
            "images": list(self.images),
            "additional_details": dict(self.additional_details),
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "time": self.time.value.isoformat() if self.time.ok else None,
            "time_error": self.time.error,
        }
