"""
WebRTC Gateway logging.

Standard logging with a TRACE level below DEBUG and a unified format for
console and file output. structlog loggers used on the connection path are
routed through the same handlers.
"""

import logging
import logging.handlers
import os

import structlog

# TRACE level (5), more detailed than DEBUG (10)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_FILE_BASE_NAME = "webrtc-gateway"


class UnifiedFormatter(logging.Formatter):
    """
    Formatter with timestamps, truncated log levels and logger names, used
    for both console and file output.
    """

    def __init__(self):
        # Format: YYYY-MM-DD HH:MM:SS [LVL] [logger_name] Message
        super().__init__('%(asctime)s [%(levelname)3.3s] [%(name)s] %(message)s',
                         datefmt='%Y-%m-%d %H:%M:%S')

        self.level_map = {
            'CRITICAL': 'CRI',
            'ERROR': 'ERR',
            'WARNING': 'WRN',
            'INFO': 'INF',
            'DEBUG': 'DBG',
            'TRACE': 'TRC',
        }

    def format(self, record):
        original_levelname = record.levelname
        if record.levelname in self.level_map:
            record.levelname = self.level_map[record.levelname]
        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname


def setup_file_logging(log_dir, log_file_base_name=LOG_FILE_BASE_NAME):
    """
    Set up file logging with daily rotation.

    Args:
        log_dir: Directory to store log files
        log_file_base_name: Base name for log files

    Returns:
        Configured file handler
    """
    os.makedirs(log_dir, exist_ok=True)

    file_handler = logging.handlers.TimedRotatingFileHandler(
        os.path.join(log_dir, f"{log_file_base_name}.log"),
        when='midnight',
        backupCount=7  # Keep one week of logs
    )
    file_handler.setFormatter(UnifiedFormatter())
    return file_handler


def setup_console_logging():
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(UnifiedFormatter())
    return console_handler


def _render_event(_, __, event_dict):
    """Render a structlog event as 'message key=value ...' for stdlib handlers."""
    event = event_dict.pop("event", "")
    context = " ".join(f"{key}={value}" for key, value in sorted(event_dict.items()))
    return f"{event} {context}" if context else str(event)


def configure_structlog():
    """Send structlog output through the standard logging handlers."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.format_exc_info,
            _render_event,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def setup_logging(logging_config):
    """
    Configure the root logger from a LoggingConfig.

    Console output is always enabled; file output is added when
    ``log_to_file`` is set.
    """
    level = level_from_string(logging_config.level)

    root = logging.getLogger()
    root.handlers = []
    root.setLevel(level)

    console_handler = setup_console_logging()
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if logging_config.log_to_file:
        file_handler = setup_file_logging(logging_config.log_path)
        file_handler.setLevel(level)
        root.addHandler(file_handler)

    configure_structlog()


def level_from_string(level_name):
    """Convert a level name to its numeric value."""
    level_map = {
        'trace': TRACE,
        'debug': logging.DEBUG,
        'info': logging.INFO,
        'warning': logging.WARNING,
        'warn': logging.WARNING,
        'error': logging.ERROR,
        'critical': logging.CRITICAL,
        'fatal': logging.CRITICAL,
    }
    return level_map.get(str(level_name).lower(), logging.INFO)
