# =============================================================================
# LiveATC Stream Directory
# =============================================================================
# Resolves a COM frequency to the LiveATC streams listening on it. The
# directory's search page is fetched with aiohttp and scraped entry by
# entry; each entry becomes a StreamCandidate tied to an airport.
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .errors import NetworkFailure, ParseAnomaly
from .geo import Position, frequency_text

logger = logging.getLogger(__name__)

# --- Directory Configuration ---
LIVEATC_BASE_URL = "https://www.liveatc.net"  # Base for queries and relative stream URLs
LIVEATC_QUERY_PATH = "/search/f.php"          # Frequency search page
PLAYLIST_SUFFIX = ".pls"                      # Stream URLs with this suffix are playlists
REQUEST_TIMEOUT_SECONDS = 10                  # Total timeout per directory request
USER_AGENT = "liveatc-client/1.0"

# --- Directory Page Patterns ---
ENTRY_MARKER = "<tr><td><strong>ICAO:"        # Starts each airport section
FREQ_TABLE_MARKER = '<table class="freqTable"'
FREQ_ROW_MARKER = '<tr><td class="td'         # One row per facility listed
RE_ORIGIN = re.compile(r'<tr><td><strong>ICAO: </strong>(\w\w\w\w)<strong>')
RE_LABEL = re.compile(r'<td bgcolor="lightblue"><strong>(.+?)</strong>')
RE_STATUS = re.compile(
    r'<tr><td><strong>Feed Status:</strong> <font color=\\?"\w+\\?"><strong>(\w+)</strong>')
RE_URL = re.compile(r'<a href="(.+?)" onClick=')
RE_PLAYLIST_FILE = re.compile(r'File1=(http\S+)')


@dataclass
class StreamCandidate:
    """One playable stream returned by the directory, tied to an airport."""
    origin: str                        # Airport ICAO code
    label: str                         # Stream name as listed
    url: str                           # Absolute stream or playlist URL
    specificity: int = 0               # Facilities sharing the stream, lower is better
    position: Optional[Position] = None  # Airport position, filled in lazily

    @property
    def is_atis(self):
        return "ATIS" in self.label

    def summary(self):
        """Text used in user messages."""
        if self.label.startswith(self.origin):
            return self.label
        return f"{self.origin} | {self.label}"

    def debug_status(self):
        return f"{self.origin}: '{self.label}' ({self.specificity} facilities) {self.url}"


class CandidateSet:
    """
    The candidates of one directory query, keyed by airport.

    Iteration is in sorted airport order. Positions resolved for a
    candidate stay on that candidate, so each set caches its own lookups.
    """

    def __init__(self, candidates=()):
        self._candidates = {}
        for candidate in candidates:
            self.add(candidate)

    def add(self, candidate):
        """Adds `candidate`, keeping the more specific one if the airport is already known."""
        existing = self._candidates.get(candidate.origin)
        if existing is None:
            logger.debug("Adding stream %s", candidate.debug_status())
        elif candidate.specificity < existing.specificity:
            logger.debug("Replacing stream with %s", candidate.debug_status())
        else:
            return False
        self._candidates[candidate.origin] = candidate
        return True

    def get(self, origin):
        return self._candidates.get(origin)

    def discard(self, origin):
        self._candidates.pop(origin, None)

    def __iter__(self):
        # Snapshot, so entries can be discarded while iterating
        return iter([self._candidates[k] for k in sorted(self._candidates)])

    def __len__(self):
        return len(self._candidates)

    def __contains__(self, origin):
        return origin in self._candidates


# =============================================================================
# Page Parsing
# =============================================================================

def _split_entries(page):
    """Yields the airport sections of a directory page."""
    pos = page.find(ENTRY_MARKER)
    while pos >= 0:
        next_pos = page.find(ENTRY_MARKER, pos + 1)
        yield page[pos:next_pos] if next_pos >= 0 else page[pos:]
        pos = next_pos


def _count_facilities(section):
    pos = section.find(FREQ_TABLE_MARKER)
    if pos < 0:
        return 0
    return section.count(FREQ_ROW_MARKER, pos + 1)


def _parse_entry(section, base_url):
    """Parses one airport section; returns None for streams that are not UP."""
    m = RE_ORIGIN.search(section)
    if not m:
        raise ParseAnomaly("airport ICAO not found")
    origin = m.group(1)

    m = RE_LABEL.search(section)
    if not m:
        raise ParseAnomaly(f"stream name not found for {origin}")
    label = m.group(1)

    m = RE_STATUS.search(section)
    if not m:
        logger.warning("No feed status found for '%s', assuming UP", label)
    elif m.group(1) != "UP":
        logger.debug("Stream '%s' is %s, skipped", label, m.group(1))
        return None

    m = RE_URL.search(section)
    if not m:
        raise ParseAnomaly(f"stream URL not found for '{label}'")
    url = m.group(1)
    # Mostly relative to the directory's own server
    if not url.startswith("http"):
        url = base_url + url

    return StreamCandidate(origin, label, url, _count_facilities(section))


def parse_directory_page(page, base_url=LIVEATC_BASE_URL):
    """Parses a directory search page into a CandidateSet, skipping malformed entries."""
    candidates = CandidateSet()
    for section in _split_entries(page):
        try:
            candidate = _parse_entry(section, base_url)
        except ParseAnomaly as e:
            logger.warning("Skipping directory entry: %s", e)
            continue
        if candidate is not None:
            candidates.add(candidate)
    return candidates


def parse_playlist(playlist):
    """Returns the first stream URL of a .pls playlist, or None."""
    m = RE_PLAYLIST_FILE.search(playlist)
    return m.group(1) if m else None


def is_playlist(url):
    return url.lower().endswith(PLAYLIST_SUFFIX)


# =============================================================================
# Closest Candidate Selection
# =============================================================================

def select_closest(candidates, listener_pos, max_dist_nm, lookup):
    """
    Finds the candidate closest to the listener, within `max_dist_nm`.

    Args:
        candidates (CandidateSet): Set to choose from. Candidates whose
            airport cannot be located are removed from it.
        listener_pos (Position): Listener's position, may be None.
        max_dist_nm (float): Reception cutoff; nothing at or beyond wins.
        lookup (callable): Maps an ICAO code to a Position or None.

    Returns:
        (StreamCandidate, float) with the distance in nm, or None.
    """
    if listener_pos is None or not len(candidates):
        return None

    closest = None
    closest_dist_nm = max_dist_nm
    for candidate in candidates:
        if candidate.position is None:
            candidate.position = lookup(candidate.origin)
            if candidate.position is None:
                logger.warning("Could not find airport %s", candidate.origin)
                candidates.discard(candidate.origin)
                continue
        dist_nm = listener_pos.dist_nm(candidate.position)
        # Strictly closer only: ties keep the first airport in sorted order
        if dist_nm < closest_dist_nm:
            closest, closest_dist_nm = candidate, dist_nm

    if closest is None:
        return None
    logger.debug("Closest airport is %s (%.1fnm)", closest.origin, closest_dist_nm)
    return closest, closest_dist_nm


# =============================================================================
# Directory Client
# =============================================================================

class StreamDirectory:
    """Queries the LiveATC directory over HTTP."""

    def __init__(self, base_url=LIVEATC_BASE_URL, timeout=REQUEST_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = None

    def _get_session(self):
        # Created lazily so it binds to the loop the requests run on
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    async def _fetch_text(self, url, params=None):
        try:
            async with self._get_session().get(url, params=params) as resp:
                if resp.status != 200:
                    raise NetworkFailure(f"HTTP {resp.status} from {resp.url}")
                return await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailure(f"{url}: {type(e).__name__}: {e}") from e

    async def resolve(self, khz):
        """Queries the streams listening on `khz` and returns them as a CandidateSet."""
        freq = frequency_text(khz)
        url = self.base_url + LIVEATC_QUERY_PATH
        logger.debug("Querying %s?freq=%s", url, freq)
        page = await self._fetch_text(url, params={"freq": freq})
        candidates = parse_directory_page(page, self.base_url)
        logger.debug("%d stream(s) found for %s", len(candidates), freq)
        return candidates

    async def resolve_playlist(self, url):
        """Fetches a .pls playlist once and returns its first stream URL, or None."""
        url_found = parse_playlist(await self._fetch_text(url))
        if url_found is None:
            logger.warning("No 'File1' entry found in playlist %s", url)
        return url_found

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
