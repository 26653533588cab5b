from __future__ import annotations

from typing import Dict, Optional

# Country-code TLDs. Longest suffix wins, so ".com.au" is checked before ".au".
TLD_COUNTRIES: Dict[str, str] = {
    ".com.au": "Australia",
    ".net.au": "Australia",
    ".org.au": "Australia",
    ".au": "Australia",
    ".co.nz": "New Zealand",
    ".nz": "New Zealand",
    ".co.uk": "United Kingdom",
    ".org.uk": "United Kingdom",
    ".uk": "United Kingdom",
    ".de": "Germany",
    ".fr": "France",
    ".es": "Spain",
    ".it": "Italy",
    ".nl": "Netherlands",
    ".be": "Belgium",
    ".at": "Austria",
    ".ch": "Switzerland",
    ".se": "Sweden",
    ".no": "Norway",
    ".dk": "Denmark",
    ".fi": "Finland",
    ".ie": "Ireland",
    ".pl": "Poland",
    ".pt": "Portugal",
    ".cz": "Czech Republic",
    ".gr": "Greece",
    ".ca": "Canada",
    ".mx": "Mexico",
    ".br": "Brazil",
    ".ar": "Argentina",
    ".co": "Colombia",
    ".cl": "Chile",
    ".jp": "Japan",
    ".cn": "China",
    ".kr": "South Korea",
    ".in": "India",
    ".sg": "Singapore",
    ".hk": "Hong Kong",
    ".tw": "Taiwan",
    ".my": "Malaysia",
    ".th": "Thailand",
    ".ph": "Philippines",
    ".id": "Indonesia",
    ".vn": "Vietnam",
    ".ae": "United Arab Emirates",
    ".za": "South Africa",
}

_SORTED_TLDS = sorted(TLD_COUNTRIES, key=len, reverse=True)


def extract_tld_country(domain: str) -> Optional[str]:
    low = (domain or "").strip().lower().rstrip(".")
    for tld in _SORTED_TLDS:
        if low.endswith(tld):
            return TLD_COUNTRIES[tld]
    return None
