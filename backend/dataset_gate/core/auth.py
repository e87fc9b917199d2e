"""Admin shared-secret authentication.

Admin operations (token re-issuance) require an out-of-band shared secret
sent in the X-Admin-Secret header. Ordinary redemption is bearer-token only
and never passes through here.
"""

import hmac

ADMIN_SECRET_HEADER = "X-Admin-Secret"


def verify_admin_secret(provided: str | None, expected: str) -> bool:
    """Compare the provided admin secret against the configured one.

    Constant-time, byte-for-byte comparison. An unset expected secret never
    authorizes anything.

    Args:
        provided: Header value from the request (None if absent).
        expected: Configured ADMIN_REMINT_SECRET.

    Returns:
        True only when both are non-empty and identical.
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
