"""
errors.py
=========
Error taxonomy shared by the installer, the status normalizer, the panel
and registry clients, the HTTP routes and the Discord bot.

Every error carries a stable machine-readable ``code`` and an HTTP-style
``status_code`` so callers dispatch on the type (or the code), never on
the message text.  ``to_dict()`` produces the wire envelope::

    {"error": {"code": ..., "message": ..., "statusCode": ..., "details": {...}}}
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error codes exposed to API and bot callers."""

    INVALID_REQUEST = "INVALID_REQUEST"
    NO_COMPATIBLE_VERSION = "NO_COMPATIBLE_VERSION"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    NO_VERSIONS_AVAILABLE = "NO_VERSIONS_AVAILABLE"
    NO_INSTALLABLE_FILE = "NO_INSTALLABLE_FILE"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    ARTIFACT_NOT_FOUND = "ARTIFACT_NOT_FOUND"
    INVALID_ARTIFACT = "INVALID_ARTIFACT"
    ALREADY_IN_PROGRESS = "ALREADY_IN_PROGRESS"
    INSTALLATION_FAILED = "INSTALLATION_FAILED"
    PANEL_NOT_CONFIGURED = "PANEL_NOT_CONFIGURED"
    STATUS_UNAVAILABLE = "STATUS_UNAVAILABLE"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    PANEL_UNREACHABLE = "PANEL_UNREACHABLE"
    PANEL_ERROR = "PANEL_ERROR"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    BAD_UPSTREAM_PAYLOAD = "BAD_UPSTREAM_PAYLOAD"
    CONFIG_INVALID = "CONFIG_INVALID"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ──────────────────────────────────────────────
#  Base
# ──────────────────────────────────────────────

class PanelBridgeError(Exception):
    """Root of every error the core raises to its callers."""

    code: str = ErrorCode.INTERNAL_ERROR.value
    status_code: int = 500
    default_message = "Internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        **details: Any,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": str(self.code),
            "message": self.message,
            "statusCode": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class RequestError(PanelBridgeError):
    """Malformed request payload (missing field, bad pagination, …)."""

    code = ErrorCode.INVALID_REQUEST.value
    status_code = 400
    default_message = "Invalid request"


class ConfigError(PanelBridgeError):
    code = ErrorCode.CONFIG_INVALID.value
    status_code = 500
    default_message = "Configuration is invalid"


# ──────────────────────────────────────────────
#  Resolution
# ──────────────────────────────────────────────

class NoCompatibleVersion(PanelBridgeError):
    code = ErrorCode.NO_COMPATIBLE_VERSION.value
    status_code = 422
    default_message = "No compatible version found"


class RequestedVersionNotFound(NoCompatibleVersion):
    """An explicit version id was requested but the project does not publish it."""

    code = ErrorCode.VERSION_NOT_FOUND.value
    status_code = 404
    default_message = "Requested version not found"


class NoVersionsAvailable(PanelBridgeError):
    code = ErrorCode.NO_VERSIONS_AVAILABLE.value
    status_code = 404
    default_message = "Project has no published versions"


class NoInstallableFile(PanelBridgeError):
    code = ErrorCode.NO_INSTALLABLE_FILE.value
    status_code = 422
    default_message = "Version has no installable file"


class ProjectNotFound(PanelBridgeError):
    code = ErrorCode.PROJECT_NOT_FOUND.value
    status_code = 404
    default_message = "Project not found"


# ──────────────────────────────────────────────
#  Installation
# ──────────────────────────────────────────────

class ArtifactNotFound(PanelBridgeError):
    code = ErrorCode.ARTIFACT_NOT_FOUND.value
    status_code = 404
    default_message = "Plugin file not found"


class InvalidArtifact(PanelBridgeError):
    code = ErrorCode.INVALID_ARTIFACT.value
    status_code = 422
    default_message = "Downloaded file is not an installable artifact"


class AlreadyInProgress(PanelBridgeError):
    code = ErrorCode.ALREADY_IN_PROGRESS.value
    status_code = 409
    default_message = "Another installation for this artifact is in progress"


class InstallationFailed(PanelBridgeError):
    code = ErrorCode.INSTALLATION_FAILED.value
    status_code = 500
    default_message = "Installation failed"


# ──────────────────────────────────────────────
#  Panel / status
# ──────────────────────────────────────────────

class PanelNotConfigured(PanelBridgeError):
    code = ErrorCode.PANEL_NOT_CONFIGURED.value
    status_code = 503
    default_message = "Panel API is not configured"


class StatusUnavailable(PanelBridgeError):
    code = ErrorCode.STATUS_UNAVAILABLE.value
    status_code = 502
    default_message = "Server status is unavailable"


# ──────────────────────────────────────────────
#  Transport
# ──────────────────────────────────────────────

class TransportError(PanelBridgeError):
    """Wraps any network or upstream fault not otherwise classified."""

    code = ErrorCode.TRANSPORT_ERROR.value
    status_code = 502
    default_message = "Upstream service request failed"


class DownloadFailed(TransportError):
    code = ErrorCode.DOWNLOAD_FAILED.value
    default_message = "Download failed"


class UpstreamPayloadError(TransportError):
    code = ErrorCode.BAD_UPSTREAM_PAYLOAD.value
    default_message = "Upstream service returned an unexpected payload"
