"""Configuration for the Kleinanzeigen extraction pipeline.

Three collaborators of the parser live here because they are plain lookup
tables rather than logic:

``Selectors``
    Logical field name to CSS selector (or attribute name) for every point
    the parser reads from a page.  The defaults follow the marketplace's
    current desktop layout; a JSON config can override single entries.

``CategoryRegistry``
    Numeric category id to :class:`ek_models.Category`.

``EkConfig``
    Bundles both with the base URL, the marketplace timezone and the network
    settings used by :mod:`ek_reader`.  It also resolves relative paths to
    absolute URLs.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import json
from pathlib import Path
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin, urlparse
from zoneinfo import ZoneInfo

from ek_models import Category, ROOT_CATEGORY


DEFAULT_BASE_URL = "https://www.kleinanzeigen.de/"
BERLIN = ZoneInfo("Europe/Berlin")


@dataclass(frozen=True)
class Selectors:
    ad_list_entry_element: str = "article.aditem"
    ad_list_entry_id: str = "data-adid"
    ad_list_entry_time: str = ".aditem-main--top--right"
    ad_list_entry_headline: str = ".text-module-begin > a"
    ad_list_entry_description: str = ".aditem-main--middle--description"
    ad_list_entry_price: str = ".aditem-main--middle--price-shipping--price"
    ad_list_entry_location: str = ".aditem-main--top--left"
    ad_list_image: str = ".imagebox"
    ad_list_image_attribute: str = "data-imgsrc"

    ad_page_expired_message: str = ".outcomemessage-warning"
    home_content: str = "#home-content"
    ad_page_additional_details_keys: str = "#viewad-details dt"
    ad_page_additional_details_values: str = "#viewad-details dd"
    ad_page_category: str = "#vap-brdcrmb > a:last-of-type"
    ad_page_category_link_attribute: str = "href"
    ad_page_category_meta: str = "#viewad-main > meta"
    ad_page_job_breadcrumb: str = "#vap-brdcrmb > a:nth-child(2) > span"
    ad_page_description: str = "#viewad-description-text"
    ad_page_headline: str = "#viewad-title"
    ad_page_images_available: str = "#viewad-image"
    ad_page_images: str = "#viewad-thumbnails img"
    ad_page_images_link_attribute: str = "data-imgsrc"
    ad_page_location: str = "#viewad-locality"
    ad_page_price: str = "#viewad-price"
    ad_page_attributes: str = "#viewad-extra-info"
    ad_page_vendor: str = "#viewad-contact .userprofile-vip > a"
    ad_page_vendor_other_ads: str = "#poster-other-ads-link"
    ad_page_vendor_shop_other_ads: str = "#viewad-bizteaser--title a"
    ad_page_vendor_link_attribute: str = "href"

    user_page_username: str = ".userprofile--name"
    user_page_shop_name: str = ".bizteaser--title"

    pagination_container: str = ".pagination-pages"
    pagination_current_class: str = "pagination-current"
    pagination_link_attribute: str = "href"

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, object]]) -> "Selectors":
        if not payload:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown selector names: {', '.join(unknown)}")
        return cls(**{key: str(value) for key, value in payload.items()})


class CategoryNotFound(LookupError):
    """Raised for a category id the registry does not know."""


DEFAULT_CATEGORIES: Dict[int, str] = {
    0: "All",
    17: "Familie, Kind & Baby",
    80: "Haus & Garten",
    102: "Jobs",
    130: "Haustiere",
    153: "Mode & Beauty",
    161: "Elektronik",
    185: "Freizeit, Hobby & Nachbarschaft",
    195: "Immobilien",
    210: "Auto, Rad & Boot",
    216: "Autos",
    217: "Fahrräder & Zubehör",
    272: "Verschenken & Tauschen",
    297: "Dienstleistungen",
}


class CategoryRegistry:
    def __init__(self, names: Optional[Mapping[int, str]] = None) -> None:
        self._categories: Dict[int, Category] = {}
        for category_id, name in (names or DEFAULT_CATEGORIES).items():
            self._categories[int(category_id)] = Category(int(category_id), str(name))
        self._categories.setdefault(ROOT_CATEGORY.id, ROOT_CATEGORY)

    def category(self, category_id: int) -> Category:
        try:
            return self._categories[category_id]
        except KeyError:
            raise CategoryNotFound(f"Category with id {category_id} not found") from None

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._categories

    def __len__(self) -> int:
        return len(self._categories)


@dataclass
class EkConfig:
    base_url: str = DEFAULT_BASE_URL
    timezone: ZoneInfo = BERLIN
    selectors: Selectors = field(default_factory=Selectors)
    categories: CategoryRegistry = field(default_factory=CategoryRegistry)
    request_timeout: float = 15.0
    max_retries: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if not self.base_url.endswith("/"):
            self.base_url += "/"
        self.request_timeout = max(5.0, float(self.request_timeout))
        self.max_retries = max(1, int(self.max_retries))
        self.base_delay = max(0.0, float(self.base_delay))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> "EkConfig":
        raw_categories = payload.get("categories")
        categories = CategoryRegistry()
        if isinstance(raw_categories, Mapping):
            merged = dict(DEFAULT_CATEGORIES)
            merged.update({int(key): str(value) for key, value in raw_categories.items()})
            categories = CategoryRegistry(merged)

        raw_selectors = payload.get("selectors")
        if raw_selectors is not None and not isinstance(raw_selectors, Mapping):
            raise ValueError("'selectors' must be a JSON object")

        return cls(
            base_url=str(payload.get("base_url") or DEFAULT_BASE_URL),
            timezone=ZoneInfo(str(payload.get("timezone") or "Europe/Berlin")),
            selectors=Selectors.from_mapping(raw_selectors),
            categories=categories,
            request_timeout=float(payload.get("request_timeout", 15.0)),
            max_retries=int(payload.get("max_retries", 3)),
            base_delay=float(payload.get("base_delay", 1.0)),
        )

    def resolve_path(self, path: str) -> str:
        if not path or not path.strip():
            raise ValueError("Cannot resolve an empty path")
        url = urljoin(self.base_url, path.strip())
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Malformed path: {path!r}")
        return url

    def category(self, category_id: int) -> Category:
        return self.categories.category(category_id)

    def link_by_id(self, ad_id: int) -> str:
        return self.resolve_path(f"s-anzeige/{ad_id}")

    def link_by_user_id(self, user_id: str) -> str:
        if user_id.startswith("/pro/") or "shop" in user_id:
            return self.resolve_path(user_id)
        return self.resolve_path(f"s-bestandsliste.html?userId={user_id}")


def load_config(path: Path) -> EkConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Config must be a JSON object")
    return EkConfig.from_mapping(data)
