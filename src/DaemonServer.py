import threading
from paramiko import (ServerInterface, AUTH_SUCCESSFUL, AUTH_FAILED, OPEN_SUCCEEDED,
                      OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED)


class Session:
    """ Per-connection state, created on handshake and dropped on disconnect. """

    def __init__(self, peer):
        self.peer = peer
        self.username = None
        self.cipher = None
        self.channels = set()
        self._lock = threading.Lock()

    @property
    def authenticated(self):
        return self.username is not None

    def channel_opened(self, channel):
        """ Hold the accepted channel until it closes; the transport only keeps weak references. """
        with self._lock:
            self.channels = {c for c in self.channels if not c.closed}
            self.channels.add(channel)

    def __repr__(self):
        return f"Session(peer={self.peer!r}, username={self.username!r}, cipher={self.cipher!r})"


class DaemonServer(ServerInterface):
    """
    Policy object paramiko consults for one connection: password authentication
    through the gate, session channels only, shell and subsystems via the registry.
    """

    def __init__(self, gate, registry, session, logger):
        self.gate = gate
        self.registry = registry
        self.session = session
        self.logger = logger

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        method_name = self.check_auth_password.__name__
        self.logger.info(f"{self.__class__.__name__}:{method_name} Password validation attempt for user {username}")
        if self.gate.authenticate(username, password, peer=self.session.peer):
            self.session.username = username
            return AUTH_SUCCESSFUL
        return AUTH_FAILED

    def check_channel_request(self, kind, chanid):
        method_name = self.check_channel_request.__name__
        if kind != 'session':
            self.logger.warning(f"{self.__class__.__name__}:{method_name} Refused {kind} channel {chanid} from {self.session.peer}")
            return OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
        self.logger.info(f"{self.__class__.__name__}:{method_name} Opened session channel {chanid} for {self.session.username}")
        return OPEN_SUCCEEDED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        return True

    def check_channel_shell_request(self, channel):
        return self.registry.open_shell(channel)

    def check_channel_exec_request(self, channel, command):
        self.logger.warning(f"{self.__class__.__name__}:check_channel_exec_request Refused exec request on channel {channel.get_id()}")
        return False

    def check_channel_subsystem_request(self, channel, name):
        method_name = self.check_channel_subsystem_request.__name__
        if not self.registry.is_registered(name):
            self.logger.warning(f"{self.__class__.__name__}:{method_name} Unknown subsystem {name!r} requested on channel {channel.get_id()}")
            return False
        self.logger.info(f"{self.__class__.__name__}:{method_name} Starting subsystem {name} on channel {channel.get_id()}")
        return super().check_channel_subsystem_request(channel, name)
