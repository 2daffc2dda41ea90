import os
import posixpath
from DaemonErrors import AccessScopeError


class VirtualFilesystemScope:
    """
    Maps the virtual paths clients see ("/" is the served root) onto the local tree.

    Every path is canonicalized, with ".." and symlinks resolved, before it is checked
    against the root, so neither traversal nor a link pointing elsewhere can leave it.
    """

    def __init__(self, root_directory, logger):
        self.root = os.path.realpath(root_directory)
        self.logger = logger

    def canonicalize(self, path):
        """ Normal form of a virtual path. Relative paths are taken from the root. """
        if isinstance(path, bytes):
            path = path.decode('utf-8')
        path = path.replace('\\', '/')
        return posixpath.normpath(posixpath.join('/', path)).replace('//', '/')

    def resolve(self, requested_path, follow_symlinks=True):
        method_name = self.resolve.__name__
        if isinstance(requested_path, bytes):
            requested_path = requested_path.decode('utf-8')
        if '\x00' in requested_path:
            raise AccessScopeError(requested_path, "Path contains a NUL byte")
        virtual = self.canonicalize(requested_path)
        local = os.path.join(self.root, *[part for part in virtual.split('/') if part])
        if follow_symlinks or local == self.root:
            resolved = os.path.realpath(local)
        else:
            # The link itself is the target; only its directory is canonicalized
            resolved = os.path.join(os.path.realpath(os.path.dirname(local)), os.path.basename(local))
        if not self.contains(resolved):
            self.logger.warning(f"{self.__class__.__name__}:{method_name} Rejected {requested_path!r}, it resolves outside the root")
            raise AccessScopeError(requested_path)
        return resolved

    def contains(self, local_path):
        return local_path == self.root or local_path.startswith(self.root.rstrip(os.sep) + os.sep)

    def to_virtual(self, local_path):
        """ Inverse of resolve: the client-facing path for a local path under the root. """
        local_path = os.path.realpath(local_path)
        if not self.contains(local_path):
            raise AccessScopeError(local_path)
        relative = os.path.relpath(local_path, self.root)
        if relative == '.':
            return '/'
        return '/' + relative.replace(os.sep, '/')
