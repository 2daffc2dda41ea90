import errno
from paramiko import SFTP_FAILURE, SFTP_NO_SUCH_FILE, SFTP_PERMISSION_DENIED


class DaemonError(Exception):
    """ Base class for every error raised by the daemon components. """


class ConfigurationError(DaemonError):
    pass


class ProviderRegistrationError(DaemonError):
    """ The cryptographic provider could not be registered. Never fatal. """


class KeyIOError(DaemonError):
    """ No host identity could be loaded or generated. Fatal at startup. """


class AuthenticationError(DaemonError):
    pass


class AccessScopeError(DaemonError):
    """ A requested path resolves outside the served root directory. """

    def __init__(self, path, message=None):
        self.path = path
        super().__init__(message or f"Path escapes the served root: {path!r}")


class AccessPermissionError(DaemonError, PermissionError):
    """ A mutating operation was attempted while the daemon is read-only. """

    def __init__(self, kind, path=None):
        self.kind = kind
        self.path = path
        super().__init__(errno.EACCES, f"Read-only access: {kind} denied", path)

    def __str__(self):
        return f"Read-only access: {self.kind} denied for {self.path}"


class ListenError(DaemonError):
    pass


class DaemonStateError(DaemonError):
    pass


# errno values not listed fall through to SFTP_FAILURE
_ERRNO_STATUS = {
    errno.ENOENT: SFTP_NO_SUCH_FILE,
    errno.ENOTDIR: SFTP_NO_SUCH_FILE,
    errno.EACCES: SFTP_PERMISSION_DENIED,
    errno.EPERM: SFTP_PERMISSION_DENIED,
}


def sftp_status_for(exc):
    """ Map an exception raised by a file operation to an SFTP status code. """
    if isinstance(exc, (AccessScopeError, AccessPermissionError)):
        return SFTP_PERMISSION_DENIED
    if isinstance(exc, OSError):
        return _ERRNO_STATUS.get(exc.errno, SFTP_FAILURE)
    return SFTP_FAILURE
