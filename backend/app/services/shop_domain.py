from __future__ import annotations

import re
from typing import Optional

from app.config import settings

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")
# Shopify store handles: lowercase letters, digits and inner hyphens.
_HANDLE_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def sanitize_shop(value: Optional[str], platform_domain: Optional[str] = None) -> Optional[str]:
    """Normalize a shop handle, domain or admin URL to ``<handle>.myshopify.com``.

    Accepted inputs include ``"foo"``, ``"FOO.myshopify.com"``,
    ``"https://foo.myshopify.com/"`` and ``"admin.shopify.com/store/foo"``.
    Returns ``None`` for anything that does not reduce to a single plain
    handle, e.g. ``"foo.myshopify.com.evil.com"`` or ``"evil@foo"``.
    """

    if not value or not isinstance(value, str):
        return None

    domain = (platform_domain or settings.SHOPIFY_PLATFORM_DOMAIN).lower()
    suffix = "." + domain

    s = value.strip().lower()
    s = _SCHEME_RE.sub("", s, count=1).rstrip("/")
    if not s:
        return None

    if suffix in s:
        head, _, tail = s.partition(suffix)
        # Only a path may follow the platform domain; another host label,
        # port, query or a second copy of the suffix is an injection attempt.
        if tail and not tail.startswith("/"):
            return None
        if suffix in tail:
            return None
        remainder = head
    else:
        remainder = s

    handle = remainder.split("/")[-1]
    if not handle or not _HANDLE_RE.match(handle):
        return None
    return f"{handle}{suffix}"


def is_canonical_shop(value: Optional[str], platform_domain: Optional[str] = None) -> bool:
    return bool(value) and sanitize_shop(value, platform_domain) == value
