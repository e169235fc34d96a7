"""Exception taxonomy for the bridge.

Only ConfigurationError is allowed to stop the process. Everything else is
handled where it happens: logged, counted on the device, recorded on the
remote action, or turned into an unverified scan.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """Missing or weak secret, unreadable terminal config, missing credentials."""


class HardwareError(BridgeError):
    """Reader enumeration or transport I/O failure."""


class AuthenticationFailure(HardwareError):
    """Sector authentication rejected (expected for Ultralight / NTAG)."""


class _StatusError(HardwareError):
    def __init__(self, message, sw1=None, sw2=None):
        super().__init__(message)
        self.sw1 = sw1
        self.sw2 = sw2

    @property
    def status(self):
        if self.sw1 is None or self.sw2 is None:
            return None
        return (self.sw1 << 8) | self.sw2


class ReadError(_StatusError):
    """A block read was rejected or the transfer failed."""


class WriteError(_StatusError):
    """A block write was rejected or the transfer failed."""


class SyncError(BridgeError):
    """A remote create/update exhausted its retries."""


class ActionExecutionError(BridgeError):
    """A remote write command could not be carried out."""
