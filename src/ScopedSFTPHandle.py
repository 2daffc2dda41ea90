import os
import sys
from paramiko import SFTPHandle, SFTPAttributes, SFTP_OK
from pydispatch import dispatcher
from AccessPolicy import OperationKind
from DaemonErrors import AccessPermissionError, sftp_status_for


def apply_attributes(local_path, attr):
    """ Change permissions, owner, times and size of a local file as requested by attr. """
    if sys.platform != 'win32':
        if attr._flags & attr.FLAG_PERMISSIONS:
            os.chmod(local_path, attr.st_mode & 0o7777)
        if attr._flags & attr.FLAG_UIDGID:
            os.chown(local_path, attr.st_uid, attr.st_gid)
    if attr._flags & attr.FLAG_AMTIME:
        os.utime(local_path, (attr.st_atime, attr.st_mtime))
    if attr._flags & attr.FLAG_SIZE:
        os.truncate(local_path, attr.st_size)


class ScopedSFTPHandle(SFTPHandle):
    def __init__(self, flags, file_obj, local_path, virtual_path, policy, logger):
        super(ScopedSFTPHandle, self).__init__(flags)
        self.readfile = file_obj
        self.writefile = file_obj
        self.local_path = local_path
        self.path = virtual_path
        self.policy = policy
        self.logger = logger
        self.written = False

    def write(self, offset, data):
        try:
            self.policy.check(OperationKind.WRITE, self.path)
        except AccessPermissionError as e:
            return sftp_status_for(e)
        result = super(ScopedSFTPHandle, self).write(offset, data)
        if result == SFTP_OK:
            self.written = True
        return result

    def close(self):
        super(ScopedSFTPHandle, self).close()
        if self.written:
            self.logger.info(f"{self.__class__.__name__}:close File closed after write: {self.path}")
            # Emit event with the path of the file received
            dispatcher.send(signal="FileReceived", sender=self, path=self.path, local_path=self.local_path)

    def stat(self):
        try:
            return SFTPAttributes.from_stat(os.fstat(self.readfile.fileno()))
        except OSError as e:
            self.logger.error(f"{self.__class__.__name__}:stat Failed to stat {self.path}: {e}")
            return sftp_status_for(e)

    def chattr(self, attr):
        try:
            self.policy.check(OperationKind.SET_ATTRIBUTES, self.path)
            apply_attributes(self.local_path, attr)
            return SFTP_OK
        except OSError as e:
            self.logger.error(f"{self.__class__.__name__}:chattr Failed to change attributes for {self.path}: {e}")
            return sftp_status_for(e)
