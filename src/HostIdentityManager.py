import base64
import hashlib
import os
from pathlib import Path
import paramiko
from DaemonErrors import KeyIOError
from ServerConfiguration import DEFAULT_HOST_KEY_BITS

KEY_DIRECTORY = 'SSH_DAEMON'
KEY_FILENAME = 'ssh_host_rsa_key'


class HostKeyPair:
    """ The server's persistent RSA identity, loaded from or written to ``path``. """

    def __init__(self, private_key, path):
        self.private_key = private_key
        self.path = Path(path)

    @property
    def algorithm(self):
        return self.private_key.get_name()

    @property
    def public_key(self):
        return f"{self.algorithm} {self.private_key.get_base64()}"

    @property
    def fingerprint(self):
        digest = hashlib.sha256(self.private_key.asbytes()).digest()
        return 'SHA256:' + base64.b64encode(digest).decode('ascii').rstrip('=')

    def __eq__(self, other):
        return isinstance(other, HostKeyPair) and self.private_key == other.private_key

    def __hash__(self):
        return hash(self.fingerprint)

    def __repr__(self):
        return f"HostKeyPair(algorithm={self.algorithm!r}, fingerprint={self.fingerprint!r}, path={str(self.path)!r})"


class HostIdentityManager:
    def __init__(self, logger, key_bits=DEFAULT_HOST_KEY_BITS):
        self.logger = logger
        self.key_bits = key_bits

    @staticmethod
    def key_path(root_path):
        return Path(root_path) / KEY_DIRECTORY / KEY_FILENAME

    def load_or_generate(self, root_path):
        """
        Return the host identity stored under root_path, generating and persisting a new RSA
        key the first time. An existing key file is never replaced; if it cannot be read the
        daemon has no identity and KeyIOError is raised.
        """
        method_name = self.load_or_generate.__name__
        path = self.key_path(root_path)
        if path.exists():
            key_pair = self._load(path)
            self.logger.info(f"{self.__class__.__name__}:{method_name} Loaded host key {key_pair.fingerprint} from {path}")
        else:
            key_pair = self._generate(path)
            self.logger.info(f"{self.__class__.__name__}:{method_name} Generated host key {key_pair.fingerprint} at {path}")
        return key_pair

    def _load(self, path):
        try:
            key = paramiko.RSAKey.from_private_key_file(str(path))
        except (OSError, paramiko.SSHException) as e:
            self.logger.error(f"{self.__class__.__name__}:_load Unable to read host key {path}: {str(e)}")
            raise KeyIOError(f"Unable to read host key {path}: {e}") from e
        return HostKeyPair(key, path)

    def _generate(self, path):
        key = paramiko.RSAKey.generate(bits=self.key_bits)
        tmp_path = path.with_name(path.name + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            key.write_private_key_file(str(tmp_path))
            os.replace(tmp_path, path)
            with open(path.with_name(path.name + '.pub'), 'w') as pub:
                pub.write(f"{key.get_name()} {key.get_base64()} ssh-daemon\n")
        except OSError as e:
            self.logger.error(f"{self.__class__.__name__}:_generate Unable to persist host key at {path}: {str(e)}")
            if tmp_path.exists():
                tmp_path.unlink()
            raise KeyIOError(f"Unable to persist host key at {path}: {e}") from e
        return HostKeyPair(key, path)
