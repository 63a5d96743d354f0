"""
Ad identifier normalization.

Meta insights carry a clean numeric ad id; POS orders carry whatever the
storefront wrote into p_utm_content (raw ids, "ad_id=..." query fragments,
ids glued to campaign slugs). Both sides go through normalize_ad_id() and the
result is the join key for reconciliation, so this must stay deterministic.
"""

import re
from urllib.parse import parse_qsl

_ALL_DIGITS = re.compile(r"[0-9]+")
_DIGIT_RUN = re.compile(r"[0-9]{8,}")
_NON_DIGIT = re.compile(r"[^0-9]")


def normalize_ad_id(raw: str | None) -> str:
    """
    Canonical ad id for a free-text identifier, or "" when nothing usable.

    1. all digits            -> returned as-is
    2. runs of 8+ digits     -> longest run, first occurrence wins ties
    3. contains "ad_id="     -> digits of the ad_id query parameter
    4. otherwise             -> trimmed input
    """
    if raw is None:
        return ""
    value = str(raw).strip()
    if not value:
        return ""

    if _ALL_DIGITS.fullmatch(value):
        return value

    runs = _DIGIT_RUN.findall(value)
    if runs:
        # max() keeps the first maximal element, which is the tie-break we want
        return max(runs, key=len)

    if "ad_id=" in value.lower():
        query = value.split("?", 1)[-1]
        for key, param in parse_qsl(query, keep_blank_values=True):
            if key.strip().lower() == "ad_id":
                digits = _NON_DIGIT.sub("", param)
                if digits:
                    return digits
                break

    return value
