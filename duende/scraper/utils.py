import re, hashlib
import unicodedata
from datetime import date
from typing import Optional

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def norm_space(s: str) -> str:
    return re.sub(r"\s+", " ", (s or "").strip())

def strip_accents(s: str) -> str:
    return "".join(c for c in unicodedata.normalize("NFKD", s) if not unicodedata.combining(c))

def normalize_key(value: Optional[str]) -> str:
    """Accent-free, casefolded, punctuation-free form used for matching names and venues."""
    if not value: return ""
    t = strip_accents(value).casefold()
    t = re.sub(r"[^\w\s-]", " ", t)
    return norm_space(t)

def event_key(artist_name: Optional[str], date_str: Optional[str], venue: Optional[str]) -> str:
    return "|".join((normalize_key(artist_name), (date_str or "").strip(), normalize_key(venue)))

def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Strict YYYY-MM-DD parse; anything else is None."""
    if not value or not ISO_DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None

def sha1(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8")).hexdigest()

# provincia for the cities that keep showing up in listings; keys are normalize_key() forms
CITY_TO_PROVINCE = {
    "malaga": "Málaga", "madrid": "Madrid", "barcelona": "Barcelona", "sevilla": "Sevilla",
    "cordoba": "Córdoba", "granada": "Granada", "jerez de la frontera": "Cádiz", "jerez": "Cádiz",
    "cadiz": "Cádiz", "valencia": "Valencia", "sotogrande": "Cádiz", "huelva": "Huelva",
    "almeria": "Almería", "jaen": "Jaén", "murcia": "Murcia", "la union": "Murcia",
    "utrera": "Sevilla", "lebrija": "Sevilla", "moron de la frontera": "Sevilla",
}

def province_for(city: Optional[str]) -> Optional[str]:
    return CITY_TO_PROVINCE.get(normalize_key(city)) if city else None
