"""Exception types raised across the repair pipeline."""


class SmartWorkerError(Exception):
    """Base class for all smart_worker errors."""


class ConfigurationError(SmartWorkerError):
    """Required configuration is missing or invalid."""


class TransportError(SmartWorkerError):
    """A model, embedding or container runtime call failed in transit."""


class ResponseFormatError(SmartWorkerError):
    """A collaborator answered with an unexpected payload shape."""


class StorageError(SmartWorkerError):
    """The failure memory store rejected a read or write."""


class SandboxError(SmartWorkerError):
    """Base class for sandbox lifecycle failures."""


class SandboxBuildError(SandboxError):
    """The sandbox image could not be built."""


class SandboxRunError(SandboxError):
    """The sandbox network or container could not be started."""
