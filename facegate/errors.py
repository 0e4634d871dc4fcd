"""Exception types raised across the facegate package."""

from __future__ import annotations


class FacegateError(Exception):
    """Base class for facegate failures."""


class ConfigError(FacegateError, ValueError):
    """Configuration section, key or value is invalid."""


class DetectorUnavailableError(FacegateError, RuntimeError):
    """Detector library or model could not be loaded."""


class GalleryLoadError(FacegateError):
    """Gallery store failed to produce entries for an organization."""

    def __init__(self, organization_id: str, message: str) -> None:
        super().__init__(f"{organization_id}: {message}")
        self.organization_id = organization_id


class MemberNotFoundError(FacegateError, LookupError):
    """Attendance sink rejected a member id that no longer exists."""

    def __init__(self, member_id: str) -> None:
        super().__init__(f"Unknown member: {member_id}")
        self.member_id = member_id
