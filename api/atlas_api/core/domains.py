import re
from urllib.parse import urlparse

_DOMAIN_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$")
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_domain(raw: str | None) -> str | None:
    """Reduce a website, URL or bare host to a lowercase registrable host without ``www.``."""
    if not raw:
        return None
    candidate = raw.strip().lower()
    if not candidate:
        return None
    if "://" not in candidate:
        candidate = f"http://{candidate}"

    host = urlparse(candidate).hostname
    if not host:
        return None
    host = host.rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    if not _DOMAIN_RE.match(host):
        return None
    return host


def email_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    _, _, domain = email.strip().rpartition("@")
    return normalize_domain(domain)


def normalize_phone(raw: str | None) -> str | None:
    """Return the 10-digit North American number, dropping a leading country code 1."""
    if not raw:
        return None
    digits = _NON_DIGIT_RE.sub("", raw)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits
