import threading
from DaemonErrors import ProviderRegistrationError

DEFAULT_PROVIDER = 'default'


def _probe_openssl_backend():
    """ Load the cryptography OpenSSL backend and return its version banner. """
    from cryptography.hazmat.backends import default_backend
    backend = default_backend()
    version_text = getattr(backend, 'openssl_version_text', None)
    return 'cryptography-openssl', version_text() if callable(version_text) else 'unknown'


class SecurityProviderBootstrap:
    """
    Process-wide registration of the cryptographic provider used for host keys and
    the transport. The state flag is class level and guarded by a lock, so the
    registration runs exactly once no matter how many daemons are built.

    There is no provider switch to flip: paramiko always uses the cryptography
    OpenSSL backend. Registering loads that backend once, up front, and records its
    name and version for the startup log. ``provider`` is informational and nothing
    reads it to pick an implementation; a failed probe only means the backend is
    loaded lazily by the first key operation instead.
    """
    _lock = threading.Lock()
    _completed = False
    provider = DEFAULT_PROVIDER
    provider_version = None
    last_error = None

    @classmethod
    def register(cls, logger, probe=_probe_openssl_backend):
        method_name = cls.register.__name__
        with cls._lock:
            if cls._completed:
                logger.info(f"{cls.__name__}:{method_name} Security provider registration is already completed ({cls.provider})")
                return cls.provider
            try:
                try:
                    name, version = probe()
                except Exception as e:
                    raise ProviderRegistrationError(f"Unable to load cryptographic backend: {e}") from e
                cls.provider, cls.provider_version = name, version
                logger.info(f"{cls.__name__}:{method_name} Set security provider to: {name} ({version}), registration completed")
            except ProviderRegistrationError as e:
                cls.provider, cls.provider_version, cls.last_error = DEFAULT_PROVIDER, None, e
                logger.error(f"{cls.__name__}:{method_name} Exception while registering security provider, falling back to {DEFAULT_PROVIDER}: {e}")
            cls._completed = True
            return cls.provider

    @classmethod
    def is_registration_completed(cls):
        return cls._completed

    @classmethod
    def reset(cls):
        """ Clear the registration state. Only meant for tests. """
        with cls._lock:
            cls._completed = False
            cls.provider = DEFAULT_PROVIDER
            cls.provider_version = None
            cls.last_error = None
