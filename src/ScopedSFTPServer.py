import os
import posixpath
from paramiko import SFTPServerInterface, SFTPAttributes, SFTP_OK, SFTP_FAILURE
from AccessPolicy import AccessPolicy, OperationKind
from DaemonErrors import AccessScopeError, sftp_status_for
from ScopedSFTPHandle import ScopedSFTPHandle, apply_attributes


class ScopedSFTPServer(SFTPServerInterface):
    """
    SFTP operations served from the local tree below the configured root. Paths are
    resolved through the VirtualFilesystemScope and mutating operations are vetted by
    the AccessPolicy; both kinds of refusal reach the client as SFTP status codes.
    """

    def __init__(self, server, scope, policy, logger, *args, **kwargs):
        super().__init__(server, *args, **kwargs)
        self.scope = scope
        self.policy = policy
        self.logger = logger

    def _failed(self, method_name, path, e):
        self.logger.error(f"{self.__class__.__name__}:{method_name} {path}: {str(e)}")
        return sftp_status_for(e)

    def session_started(self):
        self.logger.info(f"{self.__class__.__name__}: SFTP session started, root {self.scope.root}, read-only {self.policy.read_only}")

    def session_ended(self):
        self.logger.info(f"{self.__class__.__name__}: SFTP session ended.")

    def list_folder(self, path):
        try:
            local = self.scope.resolve(path)
            out = []
            for fname in os.listdir(local):
                attr = SFTPAttributes.from_stat(os.lstat(os.path.join(local, fname)))
                attr.filename = fname
                out.append(attr)
            self.logger.debug(f"{self.__class__.__name__}:list_folder Listed {len(out)} entries in {path}")
            return out
        except (AccessScopeError, OSError) as e:
            return self._failed('list_folder', path, e)

    def stat(self, path):
        try:
            return SFTPAttributes.from_stat(os.stat(self.scope.resolve(path)))
        except (AccessScopeError, OSError) as e:
            return self._failed('stat', path, e)

    def lstat(self, path):
        try:
            return SFTPAttributes.from_stat(os.lstat(self.scope.resolve(path, follow_symlinks=False)))
        except (AccessScopeError, OSError) as e:
            return self._failed('lstat', path, e)

    def open(self, path, flags, attr):
        try:
            for kind in AccessPolicy.kinds_for_open(flags):
                self.policy.check(kind, path)
            local = self.scope.resolve(path)
            mode = getattr(attr, 'st_mode', None)
            fd = os.open(local, flags | getattr(os, 'O_BINARY', 0), mode & 0o7777 if mode is not None else 0o666)
        except (AccessScopeError, OSError) as e:
            return self._failed('open', path, e)
        if (flags & os.O_CREAT) and attr is not None:
            attr._flags &= ~attr.FLAG_PERMISSIONS
            try:
                apply_attributes(local, attr)
            except OSError as e:
                os.close(fd)
                return self._failed('open', path, e)

        if flags & os.O_WRONLY:
            fstr = 'ab' if flags & os.O_APPEND else 'wb'
        elif flags & os.O_RDWR:
            fstr = 'a+b' if flags & os.O_APPEND else 'r+b'
        else:
            fstr = 'rb'
        try:
            f = os.fdopen(fd, fstr)
        except OSError as e:
            os.close(fd)
            return self._failed('open', path, e)
        self.logger.debug(f"{self.__class__.__name__}:open Opened file {path} with mode {fstr}")
        return ScopedSFTPHandle(flags, f, local, self.scope.canonicalize(path), self.policy, self.logger)

    def remove(self, path):
        try:
            self.policy.check(OperationKind.DELETE, path)
            os.remove(self.scope.resolve(path, follow_symlinks=False))
            self.logger.info(f"{self.__class__.__name__}:remove Removed file {path}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('remove', path, e)

    def rename(self, oldpath, newpath):
        try:
            self.policy.check(OperationKind.RENAME, oldpath)
            old_local = self.scope.resolve(oldpath, follow_symlinks=False)
            new_local = self.scope.resolve(newpath, follow_symlinks=False)
            if os.path.lexists(new_local):
                # SFTPv3 rename never replaces an existing target
                self.logger.error(f"{self.__class__.__name__}:rename Target {newpath} already exists")
                return SFTP_FAILURE
            os.rename(old_local, new_local)
            self.logger.info(f"{self.__class__.__name__}:rename Renamed from {oldpath} to {newpath}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('rename', oldpath, e)

    def posix_rename(self, oldpath, newpath):
        try:
            self.policy.check(OperationKind.RENAME, oldpath)
            os.replace(self.scope.resolve(oldpath, follow_symlinks=False),
                       self.scope.resolve(newpath, follow_symlinks=False))
            self.logger.info(f"{self.__class__.__name__}:posix_rename Renamed from {oldpath} to {newpath}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('posix_rename', oldpath, e)

    def mkdir(self, path, attr):
        try:
            self.policy.check(OperationKind.CREATE, path)
            local = self.scope.resolve(path)
            os.mkdir(local)
            if attr is not None:
                apply_attributes(local, attr)
            self.logger.info(f"{self.__class__.__name__}:mkdir Directory created at {path}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('mkdir', path, e)

    def rmdir(self, path):
        try:
            self.policy.check(OperationKind.DELETE, path)
            local = self.scope.resolve(path, follow_symlinks=False)
            if local == self.scope.root:
                raise AccessScopeError(path, "The root directory cannot be removed")
            os.rmdir(local)
            self.logger.info(f"{self.__class__.__name__}:rmdir Directory removed at {path}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('rmdir', path, e)

    def chattr(self, path, attr):
        try:
            self.policy.check(OperationKind.SET_ATTRIBUTES, path)
            apply_attributes(self.scope.resolve(path), attr)
            self.logger.info(f"{self.__class__.__name__}:chattr Changed attributes for {path}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('chattr', path, e)

    def canonicalize(self, path):
        try:
            return self.scope.to_virtual(self.scope.resolve(path))
        except AccessScopeError:
            # never reveal where an escaping link points
            return self.scope.canonicalize(path)

    def readlink(self, path):
        try:
            local = self.scope.resolve(path, follow_symlinks=False)
            target = os.readlink(local)
            if not os.path.isabs(target):
                target = os.path.join(os.path.dirname(local), target)
            return self.scope.to_virtual(target)
        except (AccessScopeError, OSError) as e:
            return self._failed('readlink', path, e)

    def symlink(self, target_path, path):
        try:
            self.policy.check(OperationKind.CREATE, path)
            link_local = self.scope.resolve(path, follow_symlinks=False)
            if not target_path.startswith('/'):
                target_path = posixpath.join(posixpath.dirname(self.scope.canonicalize(path)), target_path)
            os.symlink(self.scope.resolve(target_path), link_local)
            self.logger.info(f"{self.__class__.__name__}:symlink Created symlink at {path} pointing to {target_path}")
            return SFTP_OK
        except (AccessScopeError, OSError) as e:
            return self._failed('symlink', path, e)
