from __future__ import annotations

import hashlib
import hmac


def verify_hub_signature(raw_body: bytes, app_secret: str, signature_header: str | None) -> bool:
    """Check a Meta ``X-Hub-Signature-256`` header (``sha256=<hex>``) against the raw body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(signature_header[7:], expected)
