"""Provider registry: hostname to platform classification.

Profiles are loaded from ``provider_profiles`` the first time a URL is
classified and cached for the life of the registry object; there is no live
refresh. Each domain pattern is a glob where ``*`` matches any run of
characters, compiled to an anchored case-insensitive regex.

When several patterns match a hostname, the most specific one wins: the
pattern with the most literal (non-wildcard) characters. Equal specificity
falls back to load order.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session, sessionmaker

from signup_core.domain.models import LoginType, ProviderProfileRecord
from signup_core.observability.logging import get_logger
from signup_core.providers.base import Platform, ProviderProfile

logger = get_logger(__name__)

ProfileLoader = Callable[[], Iterable[ProviderProfile]]

DEFAULT_PROFILES = [
    ProviderProfile(
        platform=Platform.JACKRABBIT_CLASS.value,
        domain_patterns=("jackrabbitclass.com", "*.jackrabbitclass.com"),
        login_type=LoginType.ACCOUNT_REQUIRED,
        captcha_expected=True,
    ),
    ProviderProfile(
        platform=Platform.DAYSMART_RECREATION.value,
        domain_patterns=("*.daysmartrecreation.com", "*.dashplatform.com"),
        login_type=LoginType.ACCOUNT_REQUIRED,
    ),
    ProviderProfile(
        platform=Platform.SHOPIFY_PRODUCT.value,
        domain_patterns=("*.myshopify.com",),
        login_type=LoginType.NONE,
    ),
    ProviderProfile(
        platform=Platform.PLAYMETRICS.value,
        domain_patterns=("playmetrics.com", "*.playmetrics.com"),
        login_type=LoginType.EMAIL_PASSWORD,
    ),
]


class RegistryError(Exception):
    """Base exception for provider registry errors."""


class ProfileLoadError(RegistryError):
    """Raised when provider profiles cannot be loaded."""


def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a ``*`` glob to an anchored, case-insensitive regex."""
    body = ".*".join(re.escape(part) for part in pattern.strip().split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE)


def pattern_specificity(pattern: str) -> int:
    return len(pattern.replace("*", ""))


def extract_hostname(url: str) -> Optional[str]:
    """Hostname of ``url``, accepting bare hostnames without a scheme."""
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    return parsed.hostname or None


@dataclass(frozen=True)
class _CompiledPattern:
    regex: re.Pattern
    specificity: int
    order: int
    profile: ProviderProfile


class ProviderRegistry:
    """Classifies URLs against cached provider profiles.

    Usage:
        registry = ProviderRegistry(DatabaseProfileLoader(session_factory))
        profile = registry.detect_platform("https://app.jackrabbitclass.com/regv2.asp?id=1")
    """

    def __init__(self, loader: ProfileLoader):
        self._loader = loader
        self._patterns: Optional[list[_CompiledPattern]] = None
        self._profiles: list[ProviderProfile] = []

    def _ensure_loaded(self) -> list[_CompiledPattern]:
        if self._patterns is not None:
            return self._patterns

        try:
            profiles = list(self._loader())
        except Exception as e:
            raise ProfileLoadError(f"Failed to load provider profiles: {e}") from e

        compiled = []
        for order, profile in enumerate(profiles):
            for pattern in profile.domain_patterns:
                if not pattern or not pattern.strip():
                    continue
                compiled.append(
                    _CompiledPattern(
                        regex=compile_pattern(pattern),
                        specificity=pattern_specificity(pattern),
                        order=order,
                        profile=profile,
                    )
                )

        self._profiles = profiles
        self._patterns = compiled
        logger.info("Provider profiles loaded", profile_count=len(profiles))
        return compiled

    def profiles(self) -> list[ProviderProfile]:
        self._ensure_loaded()
        return list(self._profiles)

    def detect_platform(self, url: str) -> Optional[ProviderProfile]:
        """Return the profile owning ``url``'s hostname, or None.

        Raises:
            ProfileLoadError: If profiles have not been loaded and loading fails.
        """
        patterns = self._ensure_loaded()
        hostname = extract_hostname(url)
        if not hostname:
            return None

        best: Optional[_CompiledPattern] = None
        for entry in patterns:
            if not entry.regex.match(hostname):
                continue
            if best is None or (entry.specificity, -entry.order) > (best.specificity, -best.order):
                best = entry
        return best.profile if best else None


class DatabaseProfileLoader:
    """Reads profiles from ``provider_profiles`` in insertion order."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def __call__(self) -> list[ProviderProfile]:
        session = self.session_factory()
        try:
            rows = session.query(ProviderProfileRecord).order_by(ProviderProfileRecord.id).all()
            return [
                ProviderProfile(
                    platform=row.platform,
                    domain_patterns=tuple(row.domain_patterns or ()),
                    login_type=row.login_type,
                    captcha_expected=row.captcha_expected,
                )
                for row in rows
            ]
        finally:
            session.close()


def seed_default_profiles(db: Session) -> int:
    """Insert the built-in profiles when the table is empty.

    Returns:
        Number of rows inserted.
    """
    if db.query(ProviderProfileRecord.id).first() is not None:
        return 0
    for profile in DEFAULT_PROFILES:
        db.add(
            ProviderProfileRecord(
                platform=profile.platform,
                domain_patterns=list(profile.domain_patterns),
                login_type=profile.login_type,
                captcha_expected=profile.captcha_expected,
            )
        )
    db.flush()
    return len(DEFAULT_PROFILES)
