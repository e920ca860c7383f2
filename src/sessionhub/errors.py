"""Error types raised by sessionhub."""

import re

UPGRADE_URL = "https://sessionhub.dev/pricing"
ONBOARDING_URL = "https://sessionhub.dev/onboarding"
SETTINGS_URL = "https://sessionhub.dev/settings"

_QUOTA_PATTERN = re.compile(r"session_limit_exceeded:current=(\d+):limit=(\d+):upgrade_url=(.+)")
_ONBOARDING_MARKERS = ("no team found", "complete onboarding")


class SessionHubError(Exception):
    """Base class. ``code`` is the remote status code when there is one."""

    retryable = False

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


class TransientError(SessionHubError):
    """Timeout, unavailable server or dropped connection. Try again later."""

    retryable = True


class AuthenticationError(SessionHubError):
    def __init__(self, message: str | None = None, code: str | None = "unauthenticated"):
        super().__init__(
            message
            or f"Invalid API key. Run `sessionhub setup` with a valid key from {SETTINGS_URL}",
            code,
        )


class QuotaExceededError(SessionHubError):
    """The account's session limit is reached."""

    def __init__(self, current_count: int, limit: int, upgrade_url: str = UPGRADE_URL):
        super().__init__(
            f"Session limit reached ({current_count}/{limit}). Upgrade at {upgrade_url}",
            "resource_exhausted",
        )
        self.current_count = current_count
        self.limit = limit
        self.upgrade_url = upgrade_url


class OnboardingRequiredError(SessionHubError):
    def __init__(self, code: str | None = None):
        super().__init__(
            "Please complete onboarding at https://sessionhub.dev to create or join a team",
            code,
        )
        self.onboarding_url = ONBOARDING_URL


class RemoteError(SessionHubError):
    """Any other failure reported by the backend."""


class CaptureIntegrityError(SessionHubError):
    """Too many partial failures for the capture to be trusted."""

    def __init__(self, failures: int, threshold: int):
        super().__init__(
            f"Capture aborted: {failures} partial failures exceed the limit of {threshold}"
        )
        self.failures = failures
        self.threshold = threshold


def parse_quota_error(message: str) -> QuotaExceededError | None:
    """Recognize ``session_limit_exceeded:current=N:limit=M:upgrade_url=U``."""
    match = _QUOTA_PATTERN.search(message or "")
    if not match:
        return None
    return QuotaExceededError(int(match.group(1)), int(match.group(2)), match.group(3).strip())


def is_onboarding_message(message: str) -> bool:
    return any(marker in (message or "") for marker in _ONBOARDING_MARKERS)
