import os
import subprocess
import sys
import threading

BUFFER_SIZE = 32768


def default_shell_command():
    if sys.platform == 'win32':
        return [os.environ.get('COMSPEC', 'cmd.exe')]
    return [os.environ.get('SHELL', '/bin/sh'), '-i']


class InteractiveShell:
    """
    Bridges one shell channel to a child shell process started in the served root.
    Input from the client goes to the process stdin; stdout and stderr are pumped back
    on their own threads. When the process exits its status is sent and the channel
    closed; when the channel goes away first the process is terminated.
    """

    def __init__(self, channel, root_directory, logger, command=None):
        self.channel = channel
        self.root_directory = root_directory
        self.logger = logger
        self.command = command or default_shell_command()
        self.process = None
        self._pumps = []

    def start(self):
        method_name = self.start.__name__
        env = dict(os.environ, HOME=self.root_directory)
        self.process = subprocess.Popen(self.command, cwd=self.root_directory, env=env,
                                        stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                                        stderr=subprocess.PIPE, bufsize=0)
        self.logger.info(f"{self.__class__.__name__}:{method_name} Started shell {self.command} (pid {self.process.pid}) on channel {self.channel.get_id()}")
        for target, name in ((self._pump_output, 'out'), (self._pump_error, 'err')):
            self._pumps.append(self._spawn(target, name))
        self._spawn(self._pump_input, 'in')
        self._spawn(self._wait_for_exit, 'exit')

    def _spawn(self, target, name):
        thread = threading.Thread(target=target, name=f"Shell-{self.channel.get_id()}-{name}", daemon=True)
        thread.start()
        return thread

    def _pump_input(self):
        try:
            while True:
                data = self.channel.recv(BUFFER_SIZE)
                if not data:
                    break
                self.process.stdin.write(data)
                self.process.stdin.flush()
        except (OSError, EOFError) as e:
            self.logger.debug(f"{self.__class__.__name__}:_pump_input Input closed: {e}")
        finally:
            try:
                self.process.stdin.close()
            except OSError:
                pass
        if self.channel.closed and self.process.poll() is None:
            self.logger.info(f"{self.__class__.__name__}:_pump_input Channel closed, terminating shell pid {self.process.pid}")
            self.process.terminate()

    def _pump_output(self):
        self._pump(self.process.stdout, self.channel.sendall)

    def _pump_error(self):
        self._pump(self.process.stderr, self.channel.sendall_stderr)

    def _pump(self, stream, send):
        try:
            for data in iter(lambda: stream.read(BUFFER_SIZE), b''):
                send(data)
        except OSError as e:
            self.logger.debug(f"{self.__class__.__name__}:_pump Stream closed: {e}")

    def _wait_for_exit(self):
        status = self.process.wait()
        for thread in self._pumps:
            thread.join()
        self.logger.info(f"{self.__class__.__name__}:_wait_for_exit Shell pid {self.process.pid} exited with status {status}")
        try:
            self.channel.send_exit_status(status if status >= 0 else 255)
            self.channel.shutdown_write()
        except (OSError, EOFError) as e:
            self.logger.debug(f"{self.__class__.__name__}:_wait_for_exit Channel already gone: {e}")
        finally:
            self.channel.close()
