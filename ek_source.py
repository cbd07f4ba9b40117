"""Kleinanzeigen page extraction: listing pages and ad detail pages to ``Ad``.

The parser works on already parsed documents (:class:`bs4.BeautifulSoup`)
and only touches the network through an injected fetcher, so it is fully
testable with HTML fixtures.  Its public surface:

``build_listing_index``
    Listing page to an ordered ``{ad id: AdTime}`` mapping.
``extract_ad``
    Full extraction of one ad from its detail page (plus, for some sellers,
    their user page).  Never raises; failures collapse into a degraded ad
    whose headline carries the error.
``extract_ad_lightweight``
    An ad from a single listing entry, without further requests.
``next_page``
    URL of the following listing page, or ``None`` on the last page.

Every field is read by its own small method that takes the page (and any
value it depends on) and returns the value, so the final ``Ad`` is built in
one step.  Selector lookups return ``None`` or an empty list when nothing
matches; callers check for that instead of catching exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
import logging
import re
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from ek_config import BERLIN, EkConfig
from ek_models import NO_TIME_SET, Ad, AdTime, Category, ROOT_CATEGORY
from ek_reader import FetchError, Reader


LOGGER = logging.getLogger(__name__)


TODAY_LABEL = "Heute"
YESTERDAY_LABEL = "Gestern"
DATE_FORMAT = "%d.%m.%Y"
CLOCK_FORMAT = "%H:%M"
NO_TIME_ENTRY = "Ad has no time entry (maybe Top Ad)"
CREATION_DATE_LABEL = "Erstellungsdatum"

UNAVAILABLE_HEADLINE = "no longer available"
ERROR_HEADLINE = "Error fetching ad page: {}"
VENDOR_ERROR_NAME = "Error fetching vendor page"

PRICE_PREFIX = "Preis: "
NON_PRICED_CATEGORIES = ("Tauschen", "Zu verschenken", "Verleihen")
JOB_BREADCRUMB = "Jobs"
JOB_PRICE = "job"
UNKNOWN_PRICE = "unknown"

SKIPPED_DETAIL_ROWS = 3
AD_ID_RE = re.compile(r"[0-9]+")
USER_LIST_PREFIX_RE = re.compile(r"/s-bestandsliste\.html\?userId=")


class ListingFormatError(ValueError):
    """A listing page violates the structure every scan relies on."""


# ----------------------------------------------------------------------
# Node helpers


def parse_document(html_text: str) -> BeautifulSoup:
    return BeautifulSoup(html_text, "lxml")


def _clean_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def own_text(node: Optional[Tag]) -> str:
    """Text of the node's direct text children, without descendants.

    A ``<br>`` child counts as a space so lines do not run together.
    """
    if node is None:
        return ""
    parts: List[str] = []
    for child in node.children:
        if isinstance(child, NavigableString):
            if not isinstance(child, PreformattedString):
                parts.append(str(child))
        elif child.name == "br":
            parts.append(" ")
    return _clean_text("".join(parts))


def attribute(node: Optional[Tag], name: str) -> str:
    if node is None:
        return ""
    value = node.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def child_elements(node: Optional[Tag]) -> List[Tag]:
    if node is None:
        return []
    return [child for child in node.children if isinstance(child, Tag)]


def select_all(node: Optional[Tag], selector: str) -> List[Tag]:
    if node is None or not selector:
        return []
    return list(node.select(selector))


def select_single(node: Optional[Tag], selector: str) -> Optional[Tag]:
    """The only node matching ``selector``; ``None`` for no match or several."""
    matches = select_all(node, selector)
    if len(matches) == 1:
        return matches[0]
    return None


# ----------------------------------------------------------------------
# Time normalisation


def _clock_time(segments: List[str], raw: str):
    if len(segments) < 2:
        raise ValueError(f"Missing clock time in {raw!r}")
    return datetime.strptime(segments[1].strip(), CLOCK_FORMAT).time()


def normalize_time(raw: Optional[str], now: Optional[datetime] = None, tz: tzinfo = BERLIN) -> AdTime:
    """Turn a listing date token into an ``AdTime``.

    Accepted forms are ``"Heute, 14:30"``, ``"Gestern, 09:00"`` and
    ``"01.01.2020"``.  Empty text means the entry carries no date at all,
    which is the case for promoted ads.
    """
    text = raw or ""
    try:
        segments = text.split(",")
        head = segments[0].strip()
        today = (now or datetime.now(tz)).astimezone(tz).date()
        if head == TODAY_LABEL:
            return AdTime.resolved(datetime.combine(today, _clock_time(segments, text), tzinfo=tz))
        if head == YESTERDAY_LABEL:
            day = today - timedelta(days=1)
            return AdTime.resolved(datetime.combine(day, _clock_time(segments, text), tzinfo=tz))
        if head:
            day = datetime.strptime(head, DATE_FORMAT).date()
            return AdTime.resolved(datetime(day.year, day.month, day.day, tzinfo=tz))
        return AdTime.failed(NO_TIME_ENTRY)
    except ValueError as exc:
        return AdTime.failed(str(exc))


# ----------------------------------------------------------------------
# Vendor lookup


@dataclass(frozen=True)
class VendorLink:
    """Where the seller of an ad is named.

    ``lookup_url`` is set when the name lives on a second page; ``name`` is
    filled directly otherwise.
    """

    tier: str
    vendor_id: str
    name: str = ""
    lookup_url: Optional[str] = None
    name_selector: Optional[str] = None


@dataclass(frozen=True)
class VendorResult:
    vendor_id: str
    vendor_name: str
    error: Optional[str] = None


class EkParser:
    """Extract ads from Kleinanzeigen listing and detail pages."""

    def __init__(
        self,
        config: Optional[EkConfig] = None,
        fetcher: Optional[Callable[[str], requests.Response]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.config = config or EkConfig()
        self.selectors = self.config.selectors
        self.now = now
        self._fetcher = fetcher or Reader(self.config)

    def _now(self) -> datetime:
        return self.now or datetime.now(self.config.timezone)

    def fetch_document(self, url: str) -> BeautifulSoup:
        response = self._fetcher(url)
        if response is None:
            raise FetchError(f"No response for {url}")
        if response.status_code >= 400:
            raise FetchError(f"HTTP {response.status_code} for {url}")
        return parse_document(response.text)

    # ------------------------------------------------------------------
    # Listing pages
    def entry_id(self, entry: Tag) -> int:
        raw = attribute(entry, self.selectors.ad_list_entry_id)
        if not AD_ID_RE.fullmatch(raw):
            raise ListingFormatError(f"Listing entry has a non-numeric id: {raw!r}")
        ad_id = int(raw)
        if ad_id <= 0:
            raise ListingFormatError(f"Listing entry has a non-positive id: {raw!r}")
        return ad_id

    def entry_time(self, entry: Tag) -> AdTime:
        nodes = select_all(entry, self.selectors.ad_list_entry_time)
        raw = own_text(nodes[0]) if nodes else ""
        return normalize_time(raw, self._now(), self.config.timezone)

    def build_listing_index(self, page: BeautifulSoup, lower_bound: Optional[int] = None) -> Dict[int, AdTime]:
        index: Dict[int, AdTime] = {}
        for entry in select_all(page, self.selectors.ad_list_entry_element):
            ad_id = self.entry_id(entry)
            if lower_bound is not None and ad_id <= lower_bound:
                continue
            ad_time = self.entry_time(entry)
            if not ad_time.ok:
                LOGGER.debug("Ad %d has no usable listing time: %s", ad_id, ad_time.error)
            index[ad_id] = ad_time
        return index

    def next_page(self, page: BeautifulSoup) -> Optional[str]:
        containers = select_all(page, self.selectors.pagination_container)
        if not containers:
            return None
        pages = child_elements(containers[0])
        current_class = self.selectors.pagination_current_class
        for position, element in enumerate(pages):
            if current_class in (element.get("class") or []):
                following = pages[position + 1:]
                break
        else:
            return None
        if not following:
            return None
        path = attribute(following[0], self.selectors.pagination_link_attribute)
        if not path:
            return None
        return self.config.resolve_path(path)

    # ------------------------------------------------------------------
    # Detail page fields
    def is_available(self, page: BeautifulSoup) -> bool:
        return not (
            select_all(page, self.selectors.ad_page_expired_message)
            or select_all(page, self.selectors.home_content)
        )

    def extract_additional_details(self, page: BeautifulSoup) -> Dict[str, str]:
        keys = select_all(page, self.selectors.ad_page_additional_details_keys)
        values = select_all(page, self.selectors.ad_page_additional_details_values)

        details: Dict[str, str] = {}
        for key_node, value_node in list(zip(keys, values))[SKIPPED_DETAIL_ROWS:]:
            children = child_elements(value_node)
            first_child = children[0] if children else None
            value = own_text(value_node)
            if not value:
                value = own_text(first_child)
            if not value:
                grandchildren = child_elements(first_child)
                value = own_text(grandchildren[0] if grandchildren else None)
            if not value.replace(",", "").strip():
                value = ",".join(own_text(link) for link in select_all(value_node, "a"))
            details[own_text(key_node)] = value or own_text(first_child)
        return details

    def extract_category(self, page: BeautifulSoup) -> Category:
        link = select_single(page, self.selectors.ad_page_category)
        href = attribute(link, self.selectors.ad_page_category_link_attribute)
        segments = [segment for segment in href.split("/") if segment]
        if not segments:
            return ROOT_CATEGORY
        category_id = int(segments[-1][1:])
        return self.config.category(category_id)

    def extract_description(self, page: BeautifulSoup) -> str:
        return own_text(select_single(page, self.selectors.ad_page_description))

    def extract_headline(self, page: BeautifulSoup) -> str:
        return own_text(select_single(page, self.selectors.ad_page_headline))

    def extract_images(self, page: BeautifulSoup, current: Iterable[str] = ()) -> Tuple[str, ...]:
        if select_single(page, self.selectors.ad_page_images_available) is None:
            return tuple(current)
        return tuple(
            attribute(image, self.selectors.ad_page_images_link_attribute).replace("_72", "_3", 1)
            for image in select_all(page, self.selectors.ad_page_images)
        )

    def extract_location(self, page: BeautifulSoup) -> str:
        return own_text(select_single(page, self.selectors.ad_page_location))

    def extract_price(self, page: BeautifulSoup) -> str:
        price = select_single(page, self.selectors.ad_page_price)
        if price is not None:
            return own_text(price).replace(PRICE_PREFIX, "")

        label = attribute(select_single(page, self.selectors.ad_page_category_meta), "content")
        if label in NON_PRICED_CATEGORIES:
            return label

        breadcrumb = own_text(select_single(page, self.selectors.ad_page_job_breadcrumb))
        if breadcrumb == JOB_BREADCRUMB:
            return JOB_PRICE

        return UNKNOWN_PRICE

    def extract_detail_time(self, page: BeautifulSoup) -> AdTime:
        containers = select_all(page, self.selectors.ad_page_attributes)
        if not containers:
            return AdTime.failed("Ad page has no attribute list")
        children = child_elements(containers[0])
        for position, child in enumerate(children[:-1]):
            if CREATION_DATE_LABEL in own_text(child):
                raw = own_text(children[position + 1])
                try:
                    day = datetime.strptime(raw, DATE_FORMAT).date()
                except ValueError as exc:
                    return AdTime.failed(str(exc))
                tz = self.config.timezone
                return AdTime.resolved(datetime(day.year, day.month, day.day, tzinfo=tz))
        return AdTime.failed("Ad page has no creation date")

    def extract_time(self, page: BeautifulSoup, known_time: AdTime) -> AdTime:
        if known_time.ok:
            return known_time
        return self.extract_detail_time(page)

    # ------------------------------------------------------------------
    # Vendor
    def _vendor_id(self, link: Tag) -> str:
        return USER_LIST_PREFIX_RE.sub("", attribute(link, self.selectors.ad_page_vendor_link_attribute))

    def locate_vendor(self, page: BeautifulSoup) -> Optional[VendorLink]:
        s = self.selectors
        link = select_single(page, s.ad_page_vendor)
        if link is not None:
            return VendorLink("direct", self._vendor_id(link), name=own_text(link))

        for tier, selector, name_selector in (
            ("user", s.ad_page_vendor_other_ads, s.user_page_username),
            ("shop", s.ad_page_vendor_shop_other_ads, s.user_page_shop_name),
        ):
            link = select_single(page, selector)
            if link is not None:
                vendor_id = self._vendor_id(link)
                return VendorLink(
                    tier,
                    vendor_id,
                    lookup_url=self.config.link_by_user_id(vendor_id),
                    name_selector=name_selector,
                )
        return None

    def resolve_vendor(self, link: VendorLink) -> VendorResult:
        if link.lookup_url is None:
            return VendorResult(link.vendor_id, link.name)
        try:
            user_page = self.fetch_document(link.lookup_url)
        except Exception as exc:
            return VendorResult(link.vendor_id, VENDOR_ERROR_NAME, error=str(exc))
        name = own_text(select_single(user_page, link.name_selector or ""))
        return VendorResult(link.vendor_id, name)

    # ------------------------------------------------------------------
    # Ads
    def extract_ad(self, ad_id: int, known_time: Optional[AdTime] = None, images: Iterable[str] = ()) -> Ad:
        """Build one ad from its detail page.

        ``known_time`` comes from the listing page and is kept when resolved.
        ``images`` (e.g. a listing thumbnail) survive when the detail page
        shows no gallery.
        """
        if known_time is None:
            known_time = AdTime.failed(NO_TIME_SET)
        fields: Dict[str, object] = {"id": ad_id, "time": known_time, "images": tuple(images)}
        try:
            page = self.fetch_document(self.config.link_by_id(ad_id))
            if not self.is_available(page):
                LOGGER.info("Ad with id %d is no longer available.", ad_id)
                return Ad(id=ad_id, time=known_time, headline=UNAVAILABLE_HEADLINE)

            fields["additional_details"] = self.extract_additional_details(page)
            fields["category"] = self.extract_category(page)
            fields["description"] = self.extract_description(page)
            fields["headline"] = self.extract_headline(page)
            fields["images"] = self.extract_images(page, fields["images"])
            fields["location"] = self.extract_location(page)
            fields["price"] = self.extract_price(page)

            ad_time = self.extract_time(page, known_time)
            if not ad_time.ok:
                LOGGER.warning("Ad %d has no time: %s", ad_id, ad_time.error)
            fields["time"] = ad_time

            vendor_link = self.locate_vendor(page)
            if vendor_link is not None:
                vendor = self.resolve_vendor(vendor_link)
                if vendor.error:
                    LOGGER.warning(
                        "Vendor page for ad %d (vendor %s) failed: %s", ad_id, vendor.vendor_id, vendor.error
                    )
                fields["vendor_id"] = vendor.vendor_id
                fields["vendor_name"] = vendor.vendor_name
            return Ad(**fields)
        except Exception as exc:
            LOGGER.warning("Ad %d degraded: %s", ad_id, exc)
            fields["headline"] = ERROR_HEADLINE.format(exc)
            return Ad(**fields)

    def extract_ad_lightweight(self, ad_id: int, known_time: AdTime, entry: Tag) -> Ad:
        s = self.selectors
        thumbnail = attribute(select_single(entry, s.ad_list_image), s.ad_list_image_attribute)
        return Ad(
            id=ad_id,
            time=known_time,
            headline=own_text(select_single(entry, s.ad_list_entry_headline)),
            description=own_text(select_single(entry, s.ad_list_entry_description)),
            price=own_text(select_single(entry, s.ad_list_entry_price)),
            location=own_text(select_single(entry, s.ad_list_entry_location)),
            images=(thumbnail.replace("_9", "_3", 1),) if thumbnail else (),
        )

    def ads(self, page: BeautifulSoup, lower_bound: Optional[int] = None) -> List[Ad]:
        index = self.build_listing_index(page, lower_bound)
        return [self.extract_ad(ad_id, ad_time) for ad_id, ad_time in index.items()]

    def ads_lightweight(self, page: BeautifulSoup) -> List[Ad]:
        result: List[Ad] = []
        for entry in select_all(page, self.selectors.ad_list_entry_element):
            ad_id = self.entry_id(entry)
            result.append(self.extract_ad_lightweight(ad_id, self.entry_time(entry), entry))
        return result


def collect_ads(
    start_url: str,
    config: Optional[EkConfig] = None,
    fetcher: Optional[Callable[[str], requests.Response]] = None,
    max_pages: int = 1,
    lightweight: bool = False,
    lower_bound: Optional[int] = None,
) -> List[Ad]:
    """Walk up to ``max_pages`` listing pages starting at ``start_url``."""

    parser = EkParser(config=config, fetcher=fetcher)
    collected: List[Ad] = []
    url: Optional[str] = start_url
    pages_seen = 0
    while url and pages_seen < max(1, max_pages):
        page = parser.fetch_document(url)
        pages_seen += 1
        if lightweight:
            batch = parser.ads_lightweight(page)
            if lower_bound is not None:
                batch = [ad for ad in batch if ad.id > lower_bound]
        else:
            batch = parser.ads(page, lower_bound)
        LOGGER.info("Listing page %s: %d ads", url, len(batch))
        collected.extend(batch)
        url = parser.next_page(page)
    return collected
