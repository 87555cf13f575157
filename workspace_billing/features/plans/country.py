"""Country detection from request headers."""
from typing import Mapping, Optional

# Language-only Accept-Language tags
_LANGUAGE_COUNTRY = {
    "en": "US",
    "hi": "IN",
    "es": "ES",
    "fr": "FR",
    "de": "DE",
    "ja": "JP",
    "zh": "CN",
}

# CDN / edge headers in priority order
_COUNTRY_HEADERS = ("x-vercel-ip-country", "cf-ipcountry", "x-country-code")

UNKNOWN_COUNTRY = "XX"


def normalize_country_code(value: Optional[str], default: str = "US") -> str:
    code = (value or "").strip().upper()
    if len(code) != 2 or not code.isalpha() or code == UNKNOWN_COUNTRY:
        return default.upper()
    return code


def _country_from_accept_language(header: str) -> Optional[str]:
    # "en-IN,en;q=0.9" -> first tag "en-IN"
    first = header.split(",")[0].split(";")[0].strip()
    if not first:
        return None
    parts = first.replace("_", "-").split("-")
    if len(parts) >= 2 and len(parts[-1]) == 2 and parts[-1].isalpha():
        return parts[-1].upper()
    return _LANGUAGE_COUNTRY.get(parts[0].lower())


def detect_country(headers: Mapping[str, str], default: str = "US") -> str:
    """Best-effort country code for a request; falls back to the home country."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for header in _COUNTRY_HEADERS:
        value = (lowered.get(header) or "").strip().upper()
        if value and value != UNKNOWN_COUNTRY:
            return normalize_country_code(value, default)

    accept_language = lowered.get("accept-language")
    if accept_language:
        country = _country_from_accept_language(accept_language)
        if country:
            return normalize_country_code(country, default)

    return default.upper()
