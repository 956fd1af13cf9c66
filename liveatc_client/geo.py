# =============================================================================
# Positions, Distances and Frequencies
# =============================================================================

import csv
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# --- Distance Constants ---
M_PER_NM = 1852                       # Meters per nautical mile
EARTH_D_M = 6371.0 * 2 * 1000         # Mean earth diameter in meters

# --- Airband Constants ---
MIN_FREQ_MHZ = 118.0                  # Lowest VHF COM frequency
MAX_FREQ_MHZ = 136.975                # Highest VHF COM frequency


@dataclass(frozen=True)
class Position:
    """A point on earth: degrees latitude/longitude, altitude in meters."""
    lat: float
    lon: float
    alt: float = 0.0
    ts: float = 0.0

    def dist(self, other):
        """Great-circle distance to `other` in meters (haversine formula)."""
        lat1 = math.radians(self.lat)
        lat2 = math.radians(other.lat)
        d_lat = lat2 - lat1
        d_lon = math.radians(other.lon - self.lon)
        a = (math.sin(d_lat / 2) ** 2 +
             math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2)
        return EARTH_D_M * math.asin(math.sqrt(a))

    def dist_nm(self, other):
        return self.dist(other) / M_PER_NM


def frequency_text(khz):
    """Canonical display form of a frequency in kHz, e.g. 118300 -> '118.300'."""
    if not isinstance(khz, int) or khz <= 0:
        return ""
    return "%d.%03d" % (khz // 1000, khz % 1000)


def mhz_to_khz(mhz_str):
    """Converts frequency string (MHz) to integer (kHz), validating the airband range."""
    if not isinstance(mhz_str, str):
        return None
    try:
        # Allow comma or dot as decimal separator
        mhz = float(mhz_str.replace(",", "."))
    except ValueError:
        return None
    if MIN_FREQ_MHZ <= mhz <= MAX_FREQ_MHZ:
        return int(round(mhz * 1000))
    return None


class AirportGazetteer:
    """Maps airport identifiers (ICAO codes) to their position."""

    def __init__(self, positions=None):
        self._positions = {}
        for ident, pos in (positions or {}).items():
            self.add(ident, pos)

    @classmethod
    def from_csv(cls, path):
        """
        Loads an airport list in the OurAirports CSV layout.

        Only the columns 'ident', 'latitude_deg' and 'longitude_deg' are used;
        rows without usable coordinates are skipped.
        """
        gazetteer = cls()
        with open(path, newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                ident = (row.get("ident") or "").strip()
                try:
                    pos = Position(float(row["latitude_deg"]), float(row["longitude_deg"]))
                except (KeyError, TypeError, ValueError):
                    logger.debug("Skipping airport row without coordinates: %r", ident)
                    continue
                if ident:
                    gazetteer.add(ident, pos)
        logger.info("Loaded %d airports from %s", len(gazetteer), path)
        return gazetteer

    def add(self, ident, pos):
        self._positions[ident.upper()] = pos

    def lookup(self, ident):
        return self._positions.get(ident.upper())

    def __len__(self):
        return len(self._positions)

    def __contains__(self, ident):
        return ident.upper() in self._positions
