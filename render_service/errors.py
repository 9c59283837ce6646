"""Error taxonomy shared by the engine manager, page pool, render pipeline and installer."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error kinds returned in structured results."""

    NO_BINARY_FOUND = "NoBinaryFound"
    LAUNCH_FAILED = "LaunchFailed"
    CONNECT_FAILED = "ConnectFailed"
    DISCONNECTED = "Disconnected"
    ACQUIRE_TIMEOUT = "AcquireTimeout"
    ACQUIRE_CANCELLED = "AcquireCancelled"
    NAVIGATION_TIMEOUT = "NavigationTimeout"
    TARGET_NOT_FOUND = "TargetNotFound"
    SOURCE_NOT_FOUND = "SourceNotFound"
    ENCODING_ERROR = "EncodingError"
    RENDER_FAILED = "RenderFailed"
    INVALID_REQUEST = "InvalidRequest"
    ALREADY_INSTALLING = "AlreadyInstalling"
    INSTALL_FAILED = "InstallFailed"
    UNSUPPORTED_PLATFORM = "UnsupportedPlatform"
    UNINSTALL_FAILED = "UninstallFailed"


class RenderServiceError(Exception):
    """Base class for all errors raised inside the render service."""

    kind: ErrorKind = ErrorKind.RENDER_FAILED

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


# Connection errors
class NoBinaryFoundError(RenderServiceError):
    kind = ErrorKind.NO_BINARY_FOUND


class LaunchFailedError(RenderServiceError):
    kind = ErrorKind.LAUNCH_FAILED


class ConnectFailedError(RenderServiceError):
    kind = ErrorKind.CONNECT_FAILED


class DisconnectedError(RenderServiceError):
    kind = ErrorKind.DISCONNECTED


# Pool errors
class AcquireTimeoutError(RenderServiceError):
    kind = ErrorKind.ACQUIRE_TIMEOUT


class AcquireCancelledError(RenderServiceError):
    kind = ErrorKind.ACQUIRE_CANCELLED


# Render errors
class NavigationTimeoutError(RenderServiceError):
    kind = ErrorKind.NAVIGATION_TIMEOUT


class TargetNotFoundError(RenderServiceError):
    kind = ErrorKind.TARGET_NOT_FOUND


class SourceNotFoundError(RenderServiceError):
    kind = ErrorKind.SOURCE_NOT_FOUND


class EncodingError(RenderServiceError):
    kind = ErrorKind.ENCODING_ERROR


class InvalidRequestError(RenderServiceError):
    kind = ErrorKind.INVALID_REQUEST


# Provisioning errors
class AlreadyInstallingError(RenderServiceError):
    kind = ErrorKind.ALREADY_INSTALLING


class InstallFailedError(RenderServiceError):
    kind = ErrorKind.INSTALL_FAILED


class UnsupportedPlatformError(RenderServiceError):
    kind = ErrorKind.UNSUPPORTED_PLATFORM


class UninstallFailedError(RenderServiceError):
    kind = ErrorKind.UNINSTALL_FAILED
