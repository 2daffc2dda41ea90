import logging
from pathlib import Path
from threading import Lock
from datetime import datetime

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s'


class DaemonLogger:
    _loggers = {}
    _lock = Lock()

    @staticmethod
    def get_logger(name, output_dir="logs", console_level=None, format=None):
        """
        Returns the logger for the given component name. If the logger does not already exist,
        it creates a new one writing to a timestamped file under output_dir, plus an optional
        console handler. There is only ever one logger per component name.
        """
        with DaemonLogger._lock:
            if name not in DaemonLogger._loggers:
                full_output_dir = Path(output_dir).resolve()
                DaemonLogger._setup_logger(name, full_output_dir, console_level, format)
        return DaemonLogger._loggers[name]

    @staticmethod
    def _setup_logger(name, output_dir, console_level, log_format):
        """
        Set up a logger for one component with a unique file including a timestamp.
        This function is internally called within a lock context.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        file_path = output_dir / f"{name}_{timestamp}.log"
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        file_handler = logging.FileHandler(str(file_path))
        formatter = logging.Formatter(log_format or DEFAULT_FORMAT)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        if console_level is not None:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(console_level)
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        logger.propagate = False
        DaemonLogger._loggers[name] = logger

    @staticmethod
    def setup_paramiko_logger(output_dir="logs", level=None, format=None):
        """ Route the transport library's own log records into a dedicated file. """
        output_dir = Path(output_dir).resolve()
        output_dir.mkdir(parents=True, exist_ok=True)
        logger = logging.getLogger('paramiko')
        file_handler = logging.FileHandler(str(output_dir / 'paramiko.log'))
        file_handler.setLevel(level or logging.WARNING)
        file_handler.setFormatter(logging.Formatter(format or DEFAULT_FORMAT))
        logger.addHandler(file_handler)
        logger.setLevel(level or logging.WARNING)
        return logger
