"""
Process entry point: loads the configuration, starts the daemon and keeps it
running until SIGINT or SIGTERM is received.

Usage: ssh-daemon [path/to/config.json]. Without a path the daemon reads
config/config.json of the source checkout, or of the working directory when it
runs from an installed package.
"""

import logging
import signal
import sys
import threading
from ConfigurationLoader import ConfigLoader
from DaemonErrors import DaemonError
from DaemonLifecycle import DaemonLifecycle
from DaemonLogger import DaemonLogger
from ServerConfiguration import ServerConfiguration


def logger_setup(config):
    output_dir = config.get('output_dir', 'logs')
    log_format = config.get('log_format')
    console_level = getattr(logging, config.get('console_level', 'INFO')) if config.get('console_level', 'INFO') else None
    my_logger = DaemonLogger.get_logger("sshdaemon", output_dir, console_level=console_level, format=log_format)
    paramiko_level = getattr(logging, config['paramiko_level']) if config.get('paramiko_level') else None
    DaemonLogger.setup_paramiko_logger(output_dir, level=paramiko_level, format=log_format)
    return my_logger


def load_server_configuration(config_loader, logger):
    if not config_loader.found:
        # demo defaults: port 8022, user/pass, served from the home directory
        logger.warning(f"No configuration file at {config_loader.filepath}, using demo defaults. "
                       "Pass the configuration path as the first argument to use another file.")
        return ServerConfiguration()
    return config_loader.get_server_configuration()


def install_signal_handlers(shutdown_event, logger):
    def handle_exit_signal(signum, frame):
        logger.info(f"Received exit signal {signal.Signals(signum).name}, gracefully shutting down...")
        shutdown_event.set()

    for signame in ('SIGINT', 'SIGTERM'):
        if hasattr(signal, signame):
            signal.signal(getattr(signal, signame), handle_exit_signal)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        config_loader = ConfigLoader(argv[0] if argv else None)
        main_logger = logger_setup(config_loader.get_configuration())
        server_config = load_server_configuration(config_loader, main_logger)
    except DaemonError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    shutdown_event = threading.Event()
    install_signal_handlers(shutdown_event, main_logger)
    daemon = DaemonLifecycle(server_config, main_logger)
    try:
        daemon.start()
    except DaemonError as e:
        main_logger.error(f"Failed to start SshDaemon: {e}")
        return 1

    try:
        while not shutdown_event.wait(1.0):
            pass
    finally:
        daemon.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
