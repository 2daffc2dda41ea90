import os
from pathlib import Path
from DaemonErrors import ConfigurationError

DEFAULT_PORT = 8022
DEFAULT_HOST = '0.0.0.0'
DEFAULT_HOST_KEY_BITS = 3072
DEFAULT_DRAIN_TIMEOUT = 5.0
DEFAULT_BACKLOG = 100


class ServerConfiguration:
    """
    Immutable settings for one daemon instance. Every field is validated at
    construction time and the instance refuses attribute assignment afterwards.
    """
    __slots__ = ('port', 'username', 'password', 'read_only', 'root_directory',
                 'host', 'host_key_bits', 'drain_timeout', 'backlog')

    def __init__(self, port=DEFAULT_PORT, username='user', password='pass', read_only=False,
                 root_directory=None, host=DEFAULT_HOST, host_key_bits=DEFAULT_HOST_KEY_BITS,
                 drain_timeout=DEFAULT_DRAIN_TIMEOUT, backlog=DEFAULT_BACKLOG):
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigurationError(f"Port must be an integer between 1 and 65535, got {port!r}")
        if not username or not isinstance(username, str):
            raise ConfigurationError("Username must be a non-empty string")
        if not password or not isinstance(password, str):
            raise ConfigurationError("Password must be a non-empty string")
        if isinstance(host_key_bits, bool) or not isinstance(host_key_bits, int):
            raise ConfigurationError(f"Host key size must be an integer, got {host_key_bits!r}")
        if host_key_bits < 1024:
            raise ConfigurationError(f"Host key size {host_key_bits} is too small")
        if isinstance(drain_timeout, bool) or not isinstance(drain_timeout, (int, float)):
            raise ConfigurationError(f"Drain timeout must be a number of seconds, got {drain_timeout!r}")
        if drain_timeout < 0:
            raise ConfigurationError("Drain timeout cannot be negative")
        if isinstance(backlog, bool) or not isinstance(backlog, int) or backlog < 1:
            raise ConfigurationError(f"Backlog must be a positive integer, got {backlog!r}")
        if not host or not isinstance(host, str):
            raise ConfigurationError("Host must be a non-empty string")
        if root_directory is None:
            root_directory = os.path.expanduser('~')
        root = Path(root_directory).expanduser().resolve()
        if not root.is_dir():
            raise ConfigurationError(f"Root directory {root} does not exist or is not a directory")

        for name, value in (('port', port), ('username', username), ('password', password),
                            ('read_only', bool(read_only)), ('root_directory', str(root)),
                            ('host', host), ('host_key_bits', int(host_key_bits)),
                            ('drain_timeout', float(drain_timeout)), ('backlog', int(backlog))):
            object.__setattr__(self, name, value)

    @classmethod
    def from_mapping(cls, settings):
        """ Build a configuration from the 'daemon' section of the JSON config. """
        known = {key: value for key, value in settings.items() if key in cls.__slots__}
        unknown = set(settings) - set(known)
        if unknown:
            raise ConfigurationError(f"Unknown daemon settings: {', '.join(sorted(unknown))}")
        return cls(**known)

    def __setattr__(self, name, value):
        raise AttributeError(f"{self.__class__.__name__} is immutable")

    def __delattr__(self, name):
        raise AttributeError(f"{self.__class__.__name__} is immutable")

    def __repr__(self):
        # password is never rendered
        return (f"{self.__class__.__name__}(host={self.host!r}, port={self.port}, username={self.username!r}, "
                f"read_only={self.read_only}, root_directory={self.root_directory!r})")
