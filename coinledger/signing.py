"""
HMAC signatures for proxied file URLs.

The signature is the hex HMAC-SHA256 of the exact URL string, so any change to
the URL (query string included) invalidates it.
"""

import hashlib
import hmac
from typing import Optional
from urllib.parse import urlencode

from .errors import AuthFailureError


class UrlSigner:
    def __init__(self, secret: str):
        self._key = secret.encode("utf-8")

    def sign(self, url: str) -> str:
        return hmac.new(self._key, url.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, url: Optional[str], signature: Optional[str]) -> bool:
        if not url or not signature:
            return False
        expected = self.sign(url).encode("ascii")
        try:
            given = signature.encode("ascii")
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(expected, given)

    def require(self, url: Optional[str], signature: Optional[str]) -> None:
        if not self.verify(url, signature):
            raise AuthFailureError("invalid signature")

    def signed_path(self, url: str, route: str = "/proxy/file") -> str:
        return f"{route}?{urlencode({'url': url, 'sig': self.sign(url)})}"
