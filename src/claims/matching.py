"""Email-domain and phone checks against the listing's registered contacts."""

from __future__ import annotations

import re
from urllib.parse import urlsplit


PHONE_MATCH_DIGITS = 9
_NON_DIGITS_RE = re.compile(r"\D+")


def email_domain(email: str | None) -> str | None:
    """Lower-cased part after the last `@`, or None for a malformed address."""
    value = str(email or "").strip().lower()
    local, sep, domain = value.rpartition("@")
    if not sep or not local or not domain or "." not in domain:
        return None
    return domain.rstrip(".")


def website_domain(website: str | None) -> str | None:
    """Host of the website URL without a leading `www.`."""
    value = str(website or "").strip()
    if not value:
        return None
    if "://" not in value:
        value = f"https://{value}"
    try:
        host = urlsplit(value).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host or None


def domains_match(email_dom: str | None, site_dom: str | None) -> bool:
    """The website host equals the email domain or is a subdomain of it."""
    if not email_dom or not site_dom:
        return False
    return site_dom == email_dom or site_dom.endswith("." + email_dom)


def digits_only(phone: str | None) -> str:
    return _NON_DIGITS_RE.sub("", str(phone or ""))


def phones_match(claimed_phone: str | None, place_phone: str | None) -> bool:
    """Last nine digits of the claimed phone occur in the listing phone.

    Fewer than nine claimed digits never match.
    """
    claimed = digits_only(claimed_phone)
    listed = digits_only(place_phone)
    if len(claimed) < PHONE_MATCH_DIGITS or not listed:
        return False
    return claimed[-PHONE_MATCH_DIGITS:] in listed
