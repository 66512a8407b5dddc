"""
External Collaborators
Notification, token and location-setup clients used by the processors.
"""
from dataclasses import dataclass, field

from crm_sync.services.notification_service import (
    WelcomeNotification,
    WelcomeNotifier,
    HttpWelcomeNotifier,
    LogOnlyNotifier,
    build_notifier,
)
from crm_sync.services.token_service import TokenProvider, HttpTokenProvider
from crm_sync.services.setup_service import (
    LocationSetup,
    HttpLocationSetup,
    SkippedLocationSetup,
    build_location_setup,
)


@dataclass
class Services:
    """Bundle of collaborators handed to every processor."""
    notifier: WelcomeNotifier = field(default_factory=build_notifier)
    tokens: TokenProvider = field(default_factory=HttpTokenProvider)
    location_setup: LocationSetup = field(default_factory=build_location_setup)


__all__ = [
    "Services",
    "WelcomeNotification",
    "WelcomeNotifier",
    "HttpWelcomeNotifier",
    "LogOnlyNotifier",
    "build_notifier",
    "TokenProvider",
    "HttpTokenProvider",
    "LocationSetup",
    "HttpLocationSetup",
    "SkippedLocationSetup",
    "build_location_setup",
]
