import os
import re
import time
import logging
from typing import Awaitable, Callable

import httpx
from pydantic import BaseModel

from badge_chain import normalize_address
from sheet_csv import clean_cell, parse_csv

logger = logging.getLogger(__name__)

SHEET_ID = os.getenv("SHEET_ID", "15Xg4nlQIK6FCFrCAli8qgKvWtwtDzXjBmVFHwYgF2TI")
GID_INSIGNIAS = os.getenv("GID_INSIGNIAS", "1450605916")
GID_USUARIOS = os.getenv("GID_USUARIOS", "351737717")
CATALOG_TTL_SECONDS = float(os.getenv("CATALOG_TTL_SECONDS", "60"))
SHEET_TIMEOUT_SECONDS = float(os.getenv("SHEET_TIMEOUT_SECONDS", "10"))

# user directory columns
EMAIL_COL = 1
WALLET_COL = 2
BADGE_IDS_COL = 6

_NUMERIC_RE = re.compile(r"^[0-9]+$")
_ID_SEPARATORS_RE = re.compile(r"[,;\s]+")

Fetcher = Callable[[str], Awaitable[str]]


def sheet_export_url(gid: str, sheet_id: str = SHEET_ID) -> str:
    return f"https://docs.google.com/spreadsheets/d/{sheet_id}/export?format=csv&gid={gid}"


class Badge(BaseModel):
    id: str
    name: str
    description: str
    image: str


class UserRecord(BaseModel):
    email: str
    wallet: str
    badge_ids: list[str]


async def fetch_sheet_csv(url: str) -> str:
    """Download one tab of the spreadsheet as CSV text.

    Google answers the export URL with a redirect, so redirects are followed.
    Raises httpx.HTTPError on network failures and non-2xx answers.
    """
    async with httpx.AsyncClient(timeout=SHEET_TIMEOUT_SECONDS, follow_redirects=True) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def parse_catalog(text: str) -> dict[str, Badge]:
    """Turn the catalog tab into {id: Badge}. Row 0 is the header."""
    badges: dict[str, Badge] = {}
    for cols in parse_csv(text)[1:]:
        if len(cols) < 4:
            continue
        raw_id = clean_cell(cols[0])
        if not _NUMERIC_RE.match(raw_id):
            continue
        badge_id = str(int(raw_id))
        badges[badge_id] = Badge(
            id=badge_id,
            name=clean_cell(cols[1]),
            description=clean_cell(cols[2]),
            image=clean_cell(cols[3]),
        )
    return badges


def parse_badge_ids(raw: str | None) -> list[str]:
    """Split "1,2,3" / "1, 2, 3" / "1;2 3" into canonical ids, dropping junk and repeats."""
    ids: list[str] = []
    for token in _ID_SEPARATORS_RE.split(clean_cell(raw)):
        if not _NUMERIC_RE.match(token):
            continue
        badge_id = str(int(token))
        if badge_id not in ids:
            ids.append(badge_id)
    return ids


class CatalogCache:
    """Badge catalog held in memory and refreshed from the sheet once the TTL runs out.

    A refresh only replaces the mapping when it yields at least one badge; a failed
    or empty fetch leaves the previous catalog in place.
    """

    def __init__(self, url: str, ttl: float = CATALOG_TTL_SECONDS, fetcher: Fetcher = fetch_sheet_csv):
        self.url = url
        self.ttl = ttl
        self._fetch = fetcher
        self._badges: dict[str, Badge] = {}
        self._last_refresh: float | None = None

    @property
    def last_refresh(self) -> float | None:
        return self._last_refresh

    def is_fresh(self, now: float) -> bool:
        return (
            bool(self._badges)
            and self._last_refresh is not None
            and now - self._last_refresh < self.ttl
        )

    async def get(self, now: float | None = None) -> dict[str, Badge]:
        now = time.monotonic() if now is None else now
        if self.is_fresh(now):
            return self._badges

        logger.info("Refreshing badge catalog from Google Sheets")
        try:
            text = await self._fetch(self.url)
            badges = parse_catalog(text)
        except httpx.HTTPError as e:
            logger.warning(f"Catalog fetch failed, serving {len(self._badges)} cached badges: {e}")
            return self._badges
        except Exception as e:
            logger.error(f"Catalog refresh failed, serving {len(self._badges)} cached badges: {e}", exc_info=True)
            return self._badges

        if not badges:
            logger.warning("Catalog sheet returned no valid badges, keeping previous catalog")
            return self._badges

        self._badges = badges
        self._last_refresh = now
        logger.info(f"Badge catalog loaded: {len(badges)} badges")
        return badges


class UserDirectory:
    """Email → wallet/entitlements lookup, read fresh from the sheet on every call."""

    def __init__(self, url: str, fetcher: Fetcher = fetch_sheet_csv):
        self.url = url
        self._fetch = fetcher

    async def find(self, email: str) -> UserRecord | None:
        wanted = email.strip().lower()
        text = await self._fetch(self.url)

        for cols in parse_csv(text)[1:]:
            if len(cols) <= WALLET_COL:
                continue
            if clean_cell(cols[EMAIL_COL]).lower() != wanted:
                continue
            wallet = normalize_address(clean_cell(cols[WALLET_COL]))
            if wallet is None:
                logger.warning(f"Row for {wanted} has no valid wallet")
                return None
            raw_ids = cols[BADGE_IDS_COL] if len(cols) > BADGE_IDS_COL else ""
            return UserRecord(email=wanted, wallet=wallet, badge_ids=parse_badge_ids(raw_ids))

        return None
