import hmac
import threading
from DaemonErrors import AuthenticationError


class AuthenticationGate:
    """ Accepts exactly one username/password pair. Every attempt is judged on its own. """

    def __init__(self, username, password, logger):
        self._username = username.encode('utf-8')
        self._password = password.encode('utf-8')
        self.logger = logger
        self._lock = threading.Lock()
        self.accepted = 0
        self.rejected = 0

    def authenticate(self, username, password, peer=None):
        method_name = self.authenticate.__name__
        username = username or ''
        password = password or ''
        # both fields are always compared
        user_ok = hmac.compare_digest(username.encode('utf-8'), self._username)
        password_ok = hmac.compare_digest(password.encode('utf-8'), self._password)
        with self._lock:
            if user_ok and password_ok:
                self.accepted += 1
            else:
                self.rejected += 1
        if user_ok and password_ok:
            self.logger.info(f"{self.__class__.__name__}:{method_name} Password accepted for user {username} from {peer}")
            return True
        self.logger.warning(f"{self.__class__.__name__}:{method_name} Password rejected for user {username} from {peer}")
        return False

    def require(self, username, password, peer=None):
        if not self.authenticate(username, password, peer):
            raise AuthenticationError(f"Authentication failed for user {username}")
