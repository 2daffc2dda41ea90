import os
from enum import Enum
from pydispatch import dispatcher
from DaemonErrors import AccessPermissionError


class OperationKind(Enum):
    READ = 'read'
    WRITE = 'write'
    CREATE = 'create'
    TRUNCATE = 'truncate'
    DELETE = 'delete'
    RENAME = 'rename'
    SET_ATTRIBUTES = 'set-attributes'


class AccessPolicy:
    """ Global, immutable read-only switch consulted before every file operation. """

    def __init__(self, read_only, logger):
        self._read_only = bool(read_only)
        self.logger = logger

    @property
    def read_only(self):
        return self._read_only

    def authorize(self, kind):
        return kind is OperationKind.READ or not self._read_only

    def check(self, kind, path=None):
        """ Raise AccessPermissionError if kind is not allowed, announcing the denial. """
        if self.authorize(kind):
            return
        self.logger.warning(f"{self.__class__.__name__}:check Denied {kind.value} on {path} (read-only)")
        dispatcher.send(signal="AccessDenied", sender=self, kind=kind, path=path)
        raise AccessPermissionError(kind.value, path)

    @staticmethod
    def kinds_for_open(flags):
        """ The operation kinds an open() with the given os.O_* flags implies. """
        kinds = [OperationKind.READ]
        if flags & (os.O_WRONLY | os.O_RDWR | os.O_APPEND):
            kinds.append(OperationKind.WRITE)
        if flags & os.O_CREAT:
            kinds.append(OperationKind.CREATE)
        if flags & os.O_TRUNC:
            kinds.append(OperationKind.TRUNCATE)
        return kinds
