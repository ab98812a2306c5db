from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional
from urllib.parse import urlparse

from warden.service.errors import InvalidRedirect


class ProviderType(str, Enum):
    CREDENTIALS = "credentials"
    EMAIL = "email"
    PHONE = "phone"
    OAUTH = "oauth"
    PASSKEY = "passkey"
    TOTP = "totp"
    DEVICE = "device"


@dataclass
class BaseProvider:
    """Common shape of every configured provider.

    Concrete providers are plain dataclasses tagged with a ``type``; the sign-in
    orchestrator routes on that tag and hands the provider to the matching
    handler module.
    """

    id: str
    type: ClassVar[ProviderType]

    @property
    def allows_email_account_linking(self) -> bool:
        return False


def validate_redirect(redirect_to: Optional[str], site_url: Optional[str]) -> Optional[str]:
    """Accept relative paths or absolute URLs on the site's own origin."""
    if not redirect_to:
        return redirect_to
    if redirect_to.startswith("/") and not redirect_to.startswith("//"):
        return redirect_to
    parsed = urlparse(redirect_to)
    if not site_url or not parsed.scheme or not parsed.netloc:
        raise InvalidRedirect(detail={"redirect_to": redirect_to})
    site = urlparse(site_url)
    if (parsed.scheme, parsed.netloc) != (site.scheme, site.netloc):
        raise InvalidRedirect(detail={"redirect_to": redirect_to})
    return redirect_to
