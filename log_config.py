"""
Logging Configuration (Non-Blocking)
Console and rotating file sinks fed through a queue so logging never blocks
the event loop. The active level can be changed at runtime.
"""
import logging
import os
import queue
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Optional

LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


class LogSinks:
    """
    Owns the bridge's log handlers.

    Args:
        log_directory: Directory for ``bridge.log``. None disables the file sink.
        level: Initial level name (error, warn, info, debug).
    """

    def __init__(self, log_directory: Optional[str] = "logs", level: str = "info"):
        self.log_directory = log_directory
        formatter = logging.Formatter(LOG_FORMAT)

        self.console_handler = logging.StreamHandler()
        self.console_handler.setFormatter(formatter)
        self.handlers = [self.console_handler]

        self.file_handler: Optional[RotatingFileHandler] = None
        if log_directory:
            os.makedirs(log_directory, exist_ok=True)
            self.file_handler = RotatingFileHandler(
                os.path.join(log_directory, 'bridge.log'), maxBytes=1024 * 1024, backupCount=3
            )
            self.file_handler.setFormatter(formatter)
            self.handlers.append(self.file_handler)

        self._queue = queue.Queue(-1)  # Unlimited size
        self.queue_handler = QueueHandler(self._queue)
        self.listener = QueueListener(self._queue, *self.handlers, respect_handler_level=True)
        self._started = False

        self.level_name = "info"
        self.set_level(level)

    def start(self):
        """Route the root logger through the queue and start the listener thread."""
        if self._started:
            return
        root_logger = logging.getLogger()
        # Remove default handlers to avoid duplication
        root_logger.handlers = []
        root_logger.addHandler(self.queue_handler)
        root_logger.setLevel(LEVELS[self.level_name])
        self.listener.start()
        self._started = True

    def stop(self):
        if not self._started:
            return
        self.listener.stop()
        logging.getLogger().removeHandler(self.queue_handler)
        for handler in self.handlers:
            handler.close()
        self._started = False

    def set_level(self, name: str):
        """Apply a level to both sinks and the root logger. Raises ValueError if unknown."""
        key = str(name).lower()
        if key not in LEVELS:
            raise ValueError(f"Invalid log level '{name}', allowed: {', '.join(LEVELS)}")

        level = LEVELS[key]
        for handler in self.handlers:
            handler.setLevel(level)
        if self._started:
            logging.getLogger().setLevel(level)
        self.level_name = key
