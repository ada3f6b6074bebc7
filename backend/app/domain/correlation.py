"""Deterministic subscription correlation keys.

Format: ``SUB-{user_id}-{product_id}-{hash8}``. The hash is derived from the
sorted user/product pair so retries of the same checkout mint the same key.
"""

import hashlib
import json
import re
from dataclasses import dataclass

SUBSCRIPTION_PREFIX = "SUB-"
_HASH_RE = re.compile(r"^[0-9a-f]{8}$")


@dataclass(frozen=True)
class ParsedReference:
    user_id: str
    product_id: str
    digest: str


def build_subscription_reference(user_id: str, product_id: str, salt: str | None = None) -> str:
    payload = {"planId": str(product_id), "userId": str(user_id)}
    if salt:
        payload["salt"] = salt
    digest = hashlib.md5(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:8]
    return f"{SUBSCRIPTION_PREFIX}{user_id}-{product_id}-{digest}"


def parse_subscription_reference(reference: str | None) -> ParsedReference | None:
    """Split a ``SUB-`` reference into user, product and digest.

    Product ids never contain dashes; user ids may (UUIDs). Returns None for
    anything that does not look like a subscription reference.
    """
    if not reference or not reference.startswith(SUBSCRIPTION_PREFIX):
        return None
    body = reference[len(SUBSCRIPTION_PREFIX):]
    parts = body.rsplit("-", 2)
    if len(parts) != 3:
        return None
    user_id, product_id, digest = parts
    if not user_id or not product_id or not _HASH_RE.match(digest):
        return None
    return ParsedReference(user_id=user_id, product_id=product_id, digest=digest)


def is_subscription_reference(reference: str | None) -> bool:
    return parse_subscription_reference(reference) is not None
