"""Polite HTTP access to the marketplace.

The parser never talks to the network itself; it is handed a fetcher, i.e.
any callable mapping a URL to a :class:`requests.Response`.  ``Reader`` is the
production fetcher: a shared session with urllib3 retries, a per-host rate
limiter and rotating browser user agents.  Tests inject a fake callable
instead.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Dict, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ek_config import EkConfig


LOGGER = logging.getLogger(__name__)


USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:126.0) Gecko/20100101 Firefox/126.0",
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
    ),
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
)

HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "de-DE,de;q=0.9,en;q=0.5",
}


class FetchError(RuntimeError):
    """A page could not be fetched or came back with an error status."""


class Reader:
    """Fetch marketplace pages with retries and polite pacing.

    Consecutive requests to the same host are spaced by at least
    ``config.base_delay`` seconds plus a little jitter.
    """

    def __init__(self, config: EkConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self._session = session
        self._ua_index = 0
        self._pace_lock = threading.Lock()
        self._next_allowed: Dict[str, float] = {}

    def _pace(self, host: str) -> None:
        if not self.config.base_delay:
            return
        with self._pace_lock:
            wait = self._next_allowed.get(host, 0.0) - time.monotonic()
            if wait > 0:
                time.sleep(wait + random.uniform(0.05, 0.2))
            self._next_allowed[host] = time.monotonic() + self.config.base_delay

    def _session_with_retries(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            retry = Retry(
                total=self.config.max_retries,
                connect=self.config.max_retries,
                read=self.config.max_retries,
                backoff_factor=0.5,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "HEAD"],
                respect_retry_after_header=True,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
            session.headers.update(HEADERS)
            session.headers.update({"User-Agent": USER_AGENTS[self._ua_index]})
            self._session = session
        return self._session

    def _rotate_user_agent(self) -> None:
        self._ua_index = (self._ua_index + 1) % len(USER_AGENTS)
        if self._session is not None:
            self._session.headers.update({"User-Agent": USER_AGENTS[self._ua_index]})

    def get(self, url: str) -> requests.Response:
        session = self._session_with_retries()
        self._pace(urlparse(url).netloc)
        try:
            response = session.get(url, timeout=self.config.request_timeout)
        except requests.RequestException as exc:
            raise FetchError(f"{exc.__class__.__name__}: {url}") from exc
        if response.status_code == 403:
            LOGGER.warning("Blocked while fetching %s, rotating user agent", url)
            self._rotate_user_agent()
        return response

    __call__ = get

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
