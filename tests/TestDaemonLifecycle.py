import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import socket
import tempfile
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock
import paramiko
from pydispatch import dispatcher
from DaemonErrors import DaemonStateError, ListenError
from DaemonLifecycle import DaemonLifecycle, DaemonState
from HostIdentityManager import HostIdentityManager
from ServerConfiguration import ServerConfiguration

TEST_KEY_BITS = 2048


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class DaemonTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = os.path.realpath(self.tmp.name)
        self.mock_logger = MagicMock()
        self.daemons = []
        self.transports = []

    def tearDown(self):
        for transport in self.transports:
            transport.close()
        for daemon in self.daemons:
            daemon.stop()
        self.tmp.cleanup()

    def make_config(self, read_only=False, port=None):
        return ServerConfiguration(port=port or free_port(), username='user', password='pass',
                                   read_only=read_only, root_directory=self.root, host='127.0.0.1',
                                   host_key_bits=TEST_KEY_BITS, drain_timeout=1.0)

    def start_daemon(self, read_only=False, **kwargs):
        daemon = DaemonLifecycle(self.make_config(read_only), self.mock_logger, **kwargs)
        self.daemons.append(daemon)
        daemon.start()
        return daemon

    def connect(self, daemon, username='user', password='pass'):
        transport = paramiko.Transport(daemon.bound_address)
        transport.use_compression(True)
        self.transports.append(transport)
        transport.connect(username=username, password=password)
        return transport

    def open_sftp(self, daemon):
        return paramiko.SFTPClient.from_transport(self.connect(daemon))


class TestDaemonLifecycleStates(DaemonTestCase):
    def test_state_transitions_are_announced(self):
        states = []

        def on_state(sender, state, **kwargs):
            states.append(state)

        daemon = DaemonLifecycle(self.make_config(), self.mock_logger)
        self.daemons.append(daemon)
        dispatcher.connect(on_state, signal="DaemonStateChanged", sender=daemon)
        try:
            self.assertEqual(daemon.state, DaemonState.STOPPED)
            daemon.start()
            self.assertEqual(daemon.state, DaemonState.LISTENING)
            daemon.stop()
            self.assertEqual(daemon.state, DaemonState.STOPPED)
            self.assertTrue(daemon.wait(0))
        finally:
            dispatcher.disconnect(on_state, signal="DaemonStateChanged", sender=daemon)
        self.assertEqual(states, [DaemonState.INITIALIZING, DaemonState.LISTENING,
                                  DaemonState.STOPPING, DaemonState.STOPPED])

    def test_second_start_is_rejected(self):
        daemon = self.start_daemon()
        with self.assertRaises(DaemonStateError):
            daemon.start()
        self.assertEqual(daemon.state, DaemonState.LISTENING)

    def test_stop_when_stopped_is_ignored(self):
        daemon = DaemonLifecycle(self.make_config(), self.mock_logger)
        daemon.stop()
        self.assertEqual(daemon.state, DaemonState.STOPPED)

    def test_busy_port_raises_listen_error(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(('127.0.0.1', 0))
            blocker.listen(1)
            config = self.make_config(port=blocker.getsockname()[1])
            daemon = DaemonLifecycle(config, self.mock_logger)
            with self.assertRaises(ListenError):
                daemon.start()
        self.assertEqual(daemon.state, DaemonState.STOPPED)
        self.assertIsNone(daemon.pool)
        self.assertIsNone(daemon.bound_address)

    def test_context_manager_starts_and_stops(self):
        with DaemonLifecycle(self.make_config(), self.mock_logger) as daemon:
            self.assertEqual(daemon.state, DaemonState.LISTENING)
            self.assertEqual(daemon.bound_address[0], '127.0.0.1')
        self.assertEqual(daemon.state, DaemonState.STOPPED)

    def test_restart_keeps_host_identity(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        first = transport.get_remote_server_key()
        transport.close()
        daemon.stop()

        restarted = self.start_daemon()
        second = self.connect(restarted).get_remote_server_key()
        self.assertEqual(first.asbytes(), second.asbytes())
        self.assertEqual(first.get_name(), 'ssh-rsa')
        self.assertTrue(os.path.isfile(HostIdentityManager.key_path(self.root)))

    def test_open_sessions_are_closed_on_stop(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        paramiko.SFTPClient.from_transport(transport).listdir('/')
        started = time.monotonic()
        daemon.stop(timeout=0.2)
        self.assertLess(time.monotonic() - started, 3.0)
        self.assertEqual(daemon.state, DaemonState.STOPPED)
        self.assertEqual(daemon.transports, set())
        self.assertEqual([t.name for t in daemon.threads if t.is_alive()], [])
        transport.join(5)
        self.assertFalse(transport.is_active())

    def test_client_disconnect_releases_session(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        paramiko.SFTPClient.from_transport(transport).listdir('/')
        transport.close()
        for thread in list(daemon.threads):
            thread.join(5)
        self.assertEqual(daemon.transports, set())


class TestDaemonAuthentication(DaemonTestCase):
    def test_correct_credentials_are_accepted(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        self.assertTrue(transport.is_authenticated())
        self.assertEqual(transport.get_username(), 'user')
        self.assertEqual(daemon.gate.accepted, 1)

    def test_wrong_credentials_are_rejected(self):
        daemon = self.start_daemon()
        for username, password in (('user', 'wrong'), ('other', 'pass'), ('', '')):
            with self.subTest(username=username, password=password):
                with self.assertRaises(paramiko.AuthenticationException):
                    self.connect(daemon, username=username, password=password)
        # rejections do not lock the account
        self.assertTrue(self.connect(daemon).is_authenticated())

    def test_only_password_authentication_is_offered(self):
        daemon = self.start_daemon()
        transport = paramiko.Transport(daemon.bound_address)
        transport.use_compression(True)
        self.transports.append(transport)
        transport.start_client()
        with self.assertRaises(paramiko.BadAuthenticationType) as cm:
            transport.auth_none('user')
        self.assertEqual(cm.exception.allowed_types, ['password'])

    def test_client_without_compression_is_refused(self):
        daemon = self.start_daemon()
        transport = paramiko.Transport(daemon.bound_address)
        transport.use_compression(False)
        self.transports.append(transport)
        # whichever side notices the mismatch first ends the connection
        with self.assertRaises((paramiko.SSHException, EOFError, OSError)):
            transport.start_client(timeout=10)
        self.assertFalse(transport.is_active())
        for thread in list(daemon.threads):
            thread.join(5)
        self.assertEqual(daemon.transports, set())
        # the daemon keeps serving compressing clients
        self.assertTrue(self.connect(daemon).is_authenticated())


class TestDaemonSFTP(DaemonTestCase):
    def test_large_file_round_trip(self):
        received = []

        def on_received(sender, path, **kwargs):
            received.append(path)

        dispatcher.connect(on_received, signal="FileReceived", sender=dispatcher.Any)
        try:
            daemon = self.start_daemon()
            sftp = self.open_sftp(daemon)
            data = os.urandom(1 << 20)
            with sftp.open('/big.bin', 'wb') as f:
                f.write(data)
            with sftp.open('/big.bin', 'rb') as f:
                self.assertEqual(f.read(), data)
            with open(os.path.join(self.root, 'big.bin'), 'rb') as f:
                self.assertEqual(f.read(), data)
            self.assertEqual(sftp.stat('/big.bin').st_size, len(data))
        finally:
            dispatcher.disconnect(on_received, signal="FileReceived", sender=dispatcher.Any)
        self.assertEqual(received, ['/big.bin'])

    def test_client_cannot_leave_root(self):
        daemon = self.start_daemon()
        sftp = self.open_sftp(daemon)
        self.assertEqual(sftp.normalize('../../..'), '/')
        with self.assertRaises(FileNotFoundError):
            sftp.stat('/../../etc/passwd')
        with sftp.open('/../../escaped.txt', 'wb') as f:
            f.write(b'inside')
        self.assertTrue(os.path.isfile(os.path.join(self.root, 'escaped.txt')))

    def test_read_only_refuses_writes_and_serves_reads(self):
        with open(os.path.join(self.root, 'report.txt'), 'wb') as f:
            f.write(b'quarterly numbers')
        daemon = self.start_daemon(read_only=True)
        sftp = self.open_sftp(daemon)
        with sftp.open('/report.txt', 'rb') as f:
            self.assertEqual(f.read(), b'quarterly numbers')
        self.assertIn('report.txt', sftp.listdir('/'))
        with self.assertRaises(PermissionError):
            sftp.open('/new.txt', 'w')
        with self.assertRaises(PermissionError):
            sftp.open('/report.txt', 'a')
        with self.assertRaises(PermissionError):
            sftp.remove('/report.txt')
        with self.assertRaises(PermissionError):
            sftp.mkdir('/newdir')
        with self.assertRaises(PermissionError):
            sftp.rename('/report.txt', '/moved.txt')
        with self.assertRaises(PermissionError):
            sftp.chmod('/report.txt', 0o777)
        self.assertEqual(sorted(os.listdir(self.root)), ['SSH_DAEMON', 'report.txt'])
        with open(os.path.join(self.root, 'report.txt'), 'rb') as f:
            self.assertEqual(f.read(), b'quarterly numbers')

    def test_concurrent_uploads_share_bounded_pool(self):
        daemon = self.start_daemon(pool_size=10)
        pool = daemon.pool
        self.assertEqual(pool.size, 10)
        transports = [self.connect(daemon) for _ in range(3)]
        payloads = {f'/file{i:02d}.bin': os.urandom(64 * 1024) for i in range(30)}

        def upload(item):
            index, (path, data) = item
            sftp = paramiko.SFTPClient.from_transport(transports[index % len(transports)])
            try:
                with sftp.open(path, 'wb') as f:
                    f.write(data)
                return sftp.stat(path).st_size
            finally:
                sftp.close()

        with ThreadPoolExecutor(max_workers=30) as executor:
            sizes = list(executor.map(upload, enumerate(payloads.items())))

        self.assertEqual(sizes, [64 * 1024] * 30)
        for path, data in payloads.items():
            with open(os.path.join(self.root, path.lstrip('/')), 'rb') as f:
                self.assertEqual(f.read(), data)
        self.assertLessEqual(pool.peak, pool.size)
        self.assertGreater(pool.completed, 30)


class TestDaemonChannels(DaemonTestCase):
    def test_parallel_channels_on_one_session(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        channel_count = 16
        barrier = threading.Barrier(channel_count)

        def list_root(_):
            barrier.wait(10)
            sftp = paramiko.SFTPClient.from_transport(transport)
            try:
                return sftp.listdir('/')
            finally:
                sftp.close()

        with ThreadPoolExecutor(max_workers=channel_count) as executor:
            listings = list(executor.map(list_root, range(channel_count)))

        self.assertEqual(listings, [['SSH_DAEMON']] * channel_count)
        self.assertTrue(transport.is_active())

    def test_unknown_subsystem_is_rejected_without_ending_session(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        channel = transport.open_session()
        with self.assertRaises(paramiko.SSHException):
            channel.invoke_subsystem('no-such-subsystem')
        sftp = paramiko.SFTPClient.from_transport(transport)
        self.assertIn('SSH_DAEMON', sftp.listdir('/'))

    def test_exec_is_refused(self):
        daemon = self.start_daemon()
        channel = self.connect(daemon).open_session()
        with self.assertRaises(paramiko.SSHException):
            channel.exec_command('ls')

    def test_non_session_channels_are_refused(self):
        daemon = self.start_daemon()
        transport = self.connect(daemon)
        with self.assertRaises(paramiko.ChannelException):
            transport.open_channel('direct-tcpip', dest_addr=('127.0.0.1', 22), src_addr=('127.0.0.1', 0))

    @unittest.skipIf(sys.platform == 'win32', 'POSIX shell only')
    def test_shell_runs_in_root(self):
        daemon = self.start_daemon(shell_command=['/bin/sh'])
        channel = self.connect(daemon).open_session()
        channel.invoke_shell()
        channel.sendall(b'echo hello\npwd\nexit 3\n')
        output = b''
        while True:
            data = channel.recv(4096)
            if not data:
                break
            output += data
        self.assertEqual(channel.recv_exit_status(), 3)
        self.assertIn(b'hello', output)
        self.assertIn(self.root.encode(), output)

    def test_shell_is_refused_when_read_only(self):
        daemon = self.start_daemon(read_only=True, shell_command=['/bin/sh'])
        channel = self.connect(daemon).open_session()
        with self.assertRaises(paramiko.SSHException):
            channel.invoke_shell()


if __name__ == '__main__':
    unittest.main()
