"""Geography risk check from edge-provided country headers.

The country lookup itself happens at the CDN or proxy in front of the
application; this module only reads the header it sets.
"""

from typing import Iterable, Mapping, Optional

COUNTRY_HEADERS = ("x-geo-country", "cf-ipcountry", "x-country-code")


def client_country(headers: Mapping[str, str]) -> Optional[str]:
    for header in COUNTRY_HEADERS:
        value = headers.get(header)
        if value and value.strip():
            return value.strip().upper()
    return None


def is_high_risk_geo(headers: Mapping[str, str], geo_risk: Iterable[str]) -> bool:
    risky = {code.upper() for code in geo_risk}
    if not risky:
        return False
    country = client_country(headers)
    return country is not None and country in risky
