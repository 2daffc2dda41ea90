from paramiko import SFTPServer
from InteractiveShell import InteractiveShell
from ScopedSFTPServer import ScopedSFTPServer

SFTP_SUBSYSTEM = 'sftp'


class PooledSFTPSubsystem(SFTPServer):
    """
    SFTP subsystem whose request processing runs on the shared ConcurrencyPool.
    The channel thread reads one request, hands it to a worker and waits for it,
    so requests of one channel are still answered in the order they arrived.
    """

    def __init__(self, channel, name, server, sftp_si=ScopedSFTPServer, *args, pool=None, **kwargs):
        super().__init__(channel, name, server, sftp_si, *args, **kwargs)
        self.pool = pool

    def _process(self, t, request_number, msg):
        self.pool.run(super()._process, t, request_number, msg)


class SubsystemRegistry:
    """ Binds SFTP and shell handlers on authenticated channels to the shared pool and policy. """

    def __init__(self, scope, policy, pool, logger, shell_command=None):
        self.scope = scope
        self.policy = policy
        self.pool = pool
        self.logger = logger
        self.shell_command = shell_command
        self._handlers = {SFTP_SUBSYSTEM: PooledSFTPSubsystem}

    def install(self, transport):
        """ Register every subsystem handler on a freshly accepted transport. """
        for name, handler in self._handlers.items():
            transport.set_subsystem_handler(name, handler, ScopedSFTPServer, pool=self.pool,
                                            scope=self.scope, policy=self.policy, logger=self.logger)

    def is_registered(self, name):
        return name in self._handlers

    @property
    def names(self):
        return sorted(self._handlers)

    @property
    def shell_available(self):
        # a shell can mutate anything, so it is not offered in read-only mode
        return not self.policy.read_only

    def open_shell(self, channel):
        method_name = self.open_shell.__name__
        if not self.shell_available:
            self.logger.warning(f"{self.__class__.__name__}:{method_name} Shell refused on channel {channel.get_id()}, daemon is read-only")
            return False
        try:
            InteractiveShell(channel, self.scope.root, self.logger, self.shell_command).start()
        except OSError as e:
            self.logger.error(f"{self.__class__.__name__}:{method_name} Unable to start shell: {str(e)}")
            return False
        return True
