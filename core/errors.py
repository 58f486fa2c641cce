"""Exceptions shared by the worker, the bus and the control plane."""


class ShardError(Exception):
    """Base class for every shardkeeper error."""


class LoadError(ShardError):
    """A single handler file could not be imported or has the wrong shape."""

    def __init__(self, path, cause):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"{self.path}: {cause}")


class ReloadError(ShardError):
    """A reload did not happen; the previous catalog entry is still active."""

    def __init__(self, identifier: str, reason: str):
        self.identifier = identifier
        self.reason = reason
        super().__init__(reason)


class ModuleNotFound(ReloadError):
    def __init__(self, identifier: str):
        super().__init__(identifier, f"No module named '{identifier}' is known to this worker")


class ReloadFailed(ReloadError):
    def __init__(self, identifier: str, cause):
        self.cause = cause
        super().__init__(identifier, f"Failed to reload '{identifier}': {cause}")


class BackendUnavailable(ShardError):
    """No audio node answered."""


class BusDeliveryError(ShardError):
    """The command never reached a handler or its reply never came back."""


class CommandFailed(ShardError):
    """Raised by a command handler; the message goes back to the caller as the failure reason."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
