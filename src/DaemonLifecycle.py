import socket
import threading
import time
import traceback
from enum import Enum
import paramiko
from pydispatch import dispatcher
from AccessPolicy import AccessPolicy
from AuthenticationGate import AuthenticationGate
from ConcurrencyPool import ConcurrencyPool
from DaemonErrors import DaemonStateError, ListenError
from DaemonServer import DaemonServer, Session
from HostIdentityManager import HostIdentityManager
from SecurityProviderBootstrap import SecurityProviderBootstrap
from SubsystemRegistry import SubsystemRegistry
from VirtualFilesystemScope import VirtualFilesystemScope

CIPHERS = ('aes128-ctr', 'aes192-ctr', 'aes256-ctr', 'aes128-gcm@openssh.com', 'aes256-gcm@openssh.com')
COMPRESSIONS = ('zlib@openssh.com', 'zlib')
ACCEPT_POLL_INTERVAL = 0.5


class DaemonState(Enum):
    STOPPED = 'stopped'
    INITIALIZING = 'initializing'
    LISTENING = 'listening'
    STOPPING = 'stopping'


class DaemonLifecycle:
    """
    Owns one daemon instance from STOPPED through INITIALIZING and LISTENING to
    STOPPING and back. start() assembles the server and returns once the socket
    is listening; connections are served on background threads until stop().
    """

    def __init__(self, config, logger, pool_size=None, shell_command=None):
        self.config = config
        self.logger = logger
        self.pool_size = pool_size
        self.shell_command = shell_command
        self.state = DaemonState.STOPPED
        self.lock = threading.Lock()
        self.server_socket = None
        self.host_key = None
        self.gate = None
        self.scope = None
        self.policy = None
        self.pool = None
        self.registry = None
        self.accept_thread = None
        self.threads = []
        self.transports = set()
        self._stopped = threading.Event()
        self._stopped.set()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _set_state(self, state):
        self.state = state
        self.logger.info(f"{self.__class__.__name__}: State is now {state.value}")
        dispatcher.send(signal="DaemonStateChanged", sender=self, state=state)

    @property
    def bound_address(self):
        if self.server_socket is None:
            return None
        return self.server_socket.getsockname()[:2]

    def start(self):
        with self.lock:
            if self.state is not DaemonState.STOPPED:
                raise DaemonStateError(f"Cannot start a daemon that is {self.state.value}")
            self._set_state(DaemonState.INITIALIZING)
        try:
            self._initialize()
            self._bind()
        except Exception:
            self._release()
            self._set_state(DaemonState.STOPPED)
            raise
        self._stopped.clear()
        self._set_state(DaemonState.LISTENING)
        self.accept_thread = threading.Thread(target=self._accept_loop, name='SshDaemon-accept', daemon=True)
        self.accept_thread.start()

    def _initialize(self):
        SecurityProviderBootstrap.register(self.logger)
        identity = HostIdentityManager(self.logger, self.config.host_key_bits)
        self.host_key = identity.load_or_generate(self.config.root_directory)
        self.gate = AuthenticationGate(self.config.username, self.config.password, self.logger)
        self.scope = VirtualFilesystemScope(self.config.root_directory, self.logger)
        self.policy = AccessPolicy(self.config.read_only, self.logger)
        self.pool = ConcurrencyPool(self.logger, self.pool_size)
        self.registry = SubsystemRegistry(self.scope, self.policy, self.pool, self.logger, self.shell_command)

    def _bind(self):
        host, port = self.config.host, self.config.port
        family = socket.AF_INET6 if ':' in host else socket.AF_INET
        server_socket = socket.socket(family, socket.SOCK_STREAM)
        try:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, True)
            server_socket.bind((host, port))
            server_socket.listen(self.config.backlog)
        except OSError as e:
            server_socket.close()
            self.logger.error(f"{self.__class__.__name__}: Unable to listen on {host}:{port}: {str(e)}")
            raise ListenError(f"Unable to listen on {host}:{port}: {e}") from e
        server_socket.settimeout(ACCEPT_POLL_INTERVAL)
        self.server_socket = server_socket
        self.logger.info(f"{self.__class__.__name__}: Server listening on {host}:{port} "
                         f"(host key {self.host_key.fingerprint}, read-only {self.config.read_only})")

    def _accept_loop(self):
        while self.state is DaemonState.LISTENING:
            try:
                connection, address = self.server_socket.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self.state is DaemonState.LISTENING:
                    self.logger.error(f"{self.__class__.__name__}: Error during server operation: {str(e)}")
                break
            connection.settimeout(None)
            self.logger.info(f"{self.__class__.__name__}: Connection accepted from {address[0]}:{address[1]}")
            thread = threading.Thread(target=self._handle_connection, args=(connection, address),
                                      name=f"SshDaemon-{address[0]}:{address[1]}", daemon=True)
            with self.lock:
                self.threads = [t for t in self.threads if t.is_alive()]
                self.threads.append(thread)
            thread.start()

    def _setup_transport(self, connection, session):
        transport = paramiko.Transport(connection)
        options = transport.get_security_options()
        # keep only the restricted ciphers this paramiko release implements
        options.ciphers = [cipher for cipher in CIPHERS if cipher in options.ciphers]
        options.compression = COMPRESSIONS
        transport.add_server_key(self.host_key.private_key)
        self.registry.install(transport)
        with self.lock:
            self.transports.add(transport)
        try:
            transport.start_server(server=DaemonServer(self.gate, self.registry, session, self.logger))
        except Exception:
            transport.close()
            with self.lock:
                self.transports.discard(transport)
            raise
        session.cipher = transport.local_cipher
        self.logger.debug(f"{self.__class__.__name__}: Transport set up for {session.peer[0]}, cipher {session.cipher}")
        return transport

    def _handle_connection(self, connection, address):
        transport = None
        session = Session(address)
        try:
            transport = self._setup_transport(connection, session)
            # a forced close does not wake a blocked accept(), so poll
            while transport.is_active():
                channel = transport.accept(ACCEPT_POLL_INTERVAL)
                if channel is None:
                    continue
                session.channel_opened(channel)
                self.logger.debug(f"{self.__class__.__name__}: Channel {channel.get_id()} accepted for {session.username}")
            self.logger.info(f"{self.__class__.__name__}: Transport for {address[0]} is no longer active.")
        except EOFError:
            self.logger.info(f"{self.__class__.__name__}: Client {address[0]} disconnected unexpectedly.")
        except paramiko.SSHException as e:
            # Log only the error message, the traceback goes to debug
            self.logger.error(f"{self.__class__.__name__}: SSH protocol error from {address[0]}: {str(e)}")
            self.logger.debug(f"Full traceback: {traceback.format_exc()}")
        except Exception as e:
            self.logger.error(f"{self.__class__.__name__}: Unhandled error for {address[0]}: {str(e)}")
            self.logger.debug(f"Full traceback: {traceback.format_exc()}")
        finally:
            if transport:
                transport.close()
                with self.lock:
                    self.transports.discard(transport)
            else:
                connection.close()
            self.logger.info(f"{self.__class__.__name__}: Session closed: {session}")

    def stop(self, timeout=None):
        """
        Close the listening socket, give open sessions up to the drain timeout to
        finish, then close whatever transports remain and release the pool.
        """
        with self.lock:
            if self.state is not DaemonState.LISTENING:
                self.logger.info(f"{self.__class__.__name__}: Stop ignored, daemon is {self.state.value}")
                return
            self._set_state(DaemonState.STOPPING)
        self.server_socket.close()
        if self.accept_thread is not None:
            self.accept_thread.join()
        drain_timeout = self.config.drain_timeout if timeout is None else timeout
        if not self._drain(drain_timeout):
            with self.lock:
                remaining = list(self.transports)
            self.logger.warning(f"{self.__class__.__name__}: Forcing {len(remaining)} session(s) closed after {drain_timeout}s")
            for transport in remaining:
                transport.close()
            self._drain(max(drain_timeout, 2 * ACCEPT_POLL_INTERVAL))
        self._release()
        self._set_state(DaemonState.STOPPED)
        self._stopped.set()
        self.logger.info(f"{self.__class__.__name__}: Server has been stopped.")

    def _drain(self, timeout):
        """ Wait for connection threads to finish; True when none is left. """
        deadline = time.monotonic() + timeout
        with self.lock:
            threads = list(self.threads)
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        return not any(thread.is_alive() for thread in threads)

    def _release(self):
        if self.server_socket is not None:
            self.server_socket.close()
            self.server_socket = None
        if self.pool is not None:
            self.pool.shutdown(wait=True)
            self.pool = None

    def wait(self, timeout=None):
        """ Block until the daemon is stopped. """
        return self._stopped.wait(timeout)
