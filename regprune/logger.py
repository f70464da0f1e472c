"""
Logging system for regprune.

Console output is filtered by level so that the per-tick unit tables and
memory reports can be switched on without drowning normal progress messages.
Optionally, every message is also handed to a background process that writes
a timestamped log file.
"""

import sys
import os
import atexit
from typing import Optional, TextIO, Union, Tuple, List
from multiprocessing import Process, Queue
from datetime import datetime

import psutil


LevelFilter = Union[int, Tuple[int, ...], List[int]]


class LogLevel:
    """Log level constants."""
    ERROR = 40
    WARNING = 30
    INFO = 20
    MEMORY = 15
    DEBUG = 10

    _NAMES = {
        ERROR: "ERROR",
        WARNING: "WARNING",
        INFO: "INFO",
        MEMORY: "MEMORY",
        DEBUG: "DEBUG",
    }

    @classmethod
    def get_name(cls, level: int) -> str:
        return cls._NAMES.get(level, f"LEVEL{level}")

    @classmethod
    def from_name(cls, name: str) -> int:
        """Get log level from name (case-insensitive)."""
        wanted = name.upper()
        for level, level_name in cls._NAMES.items():
            if level_name == wanted:
                return level
        raise ValueError(f"Unknown log level: {name}")


def _passes(level: int, level_filter: LevelFilter) -> bool:
    # tuple/list selects exact levels, an int is a threshold
    if isinstance(level_filter, (tuple, list)):
        return level in level_filter
    return level >= level_filter


class Logger:
    """
    Leveled logger shared by the pruning components.

    Levels, least to most verbose:
    - ERROR (40): configuration and invariant failures
    - WARNING (30): suspicious but survivable situations
    - INFO (20): registration, pruning events, layer finished (default)
    - MEMORY (15): process memory on pruning ticks
    - DEBUG (10): unit tables, recoverable skips, propagation details

    ``level`` and ``file_log_level`` accept either a threshold (int) or an
    explicit collection of levels to show.

    Example:
        logger = Logger(level=LogLevel.DEBUG, program_name="train_vgg",
                        enable_file_logging=True)
    """

    _instance: Optional['Logger'] = None

    def __init__(
        self,
        level: LevelFilter = LogLevel.INFO,
        program_name: Optional[str] = None,
        file: Optional[TextIO] = None,
        enable_file_logging: bool = False,
        file_log_level: LevelFilter = LogLevel.DEBUG,
        log_dir: str = "logs"
    ):
        """
        Args:
            level: Console filter
            program_name: Used to name the log file
            file: Console stream (default: sys.stdout)
            enable_file_logging: Start the background file writer
            file_log_level: File filter
            log_dir: Directory for log files
        """
        self.level = level
        self.program_name = program_name or "regprune"
        self.file = file or sys.stdout
        self.file_log_level = file_log_level
        self.log_dir = log_dir

        self.enable_file_logging = enable_file_logging
        self.log_queue: Optional[Queue] = None
        self.log_process: Optional[Process] = None
        self.log_file_path: Optional[str] = None

        if self.enable_file_logging:
            self._start_file_logging()

        Logger._instance = self
        atexit.register(self.cleanup)

    def _start_file_logging(self):
        os.makedirs(self.log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file_path = os.path.join(
            self.log_dir,
            f"{self.program_name}_{timestamp}.log"
        )
        self.log_queue = Queue(maxsize=0)
        self.log_process = Process(
            target=_file_writer,
            args=(self.log_queue, self.log_file_path, self.file_log_level),
            daemon=True
        )
        self.log_process.start()

    def cleanup(self):
        """Flush and stop the file writer, if any."""
        if self.log_process and self.log_process.is_alive():
            self.log_queue.put(None)
            self.log_process.join(timeout=5.0)
            if self.log_process.is_alive():
                self.log_process.terminate()
                self.log_process.join(timeout=1.0)

    @classmethod
    def get_instance(cls) -> 'Logger':
        """Return the process-wide logger, creating a console-only one on demand."""
        if cls._instance is None:
            cls._instance = Logger()
        return cls._instance

    def set_level(self, level: LevelFilter):
        self.level = level

    def set_level_from_name(self, name: str):
        self.level = LogLevel.from_name(name)

    def _log(self, level: int, message: str):
        if _passes(level, self.level):
            print(message, file=self.file)
        if self.enable_file_logging:
            self.log_queue.put((level, message))

    def error(self, message: str):
        self._log(LogLevel.ERROR, message)

    def warning(self, message: str):
        self._log(LogLevel.WARNING, message)

    def info(self, message: str):
        self._log(LogLevel.INFO, message)

    def memory(self, message: str):
        self._log(LogLevel.MEMORY, message)

    def debug(self, message: str):
        self._log(LogLevel.DEBUG, message)

    def is_enabled_for(self, level: int) -> bool:
        """Check if a level reaches the console; used to skip building big tables."""
        return _passes(level, self.level)

    def log_memory_usage(self, tag: str):
        """Report resident/virtual memory of this process at MEMORY level."""
        if not self.is_enabled_for(LogLevel.MEMORY) and not self.enable_file_logging:
            return
        info = psutil.Process().memory_info()
        self.memory(
            f"[{tag}] RAM: {info.rss / (1024 ** 3):.3f}GB "
            f"(VMS: {info.vms / (1024 ** 3):.3f}GB)"
        )


def _file_writer(queue: Queue, log_file_path: str, file_log_level: LevelFilter):
    """
    Background worker: consume (level, message) pairs until the None sentinel,
    filter them and append formatted lines to the log file.
    """
    with open(log_file_path, 'w', encoding='utf-8') as f:
        while True:
            entry = queue.get()
            if entry is None:
                break
            level, message = entry
            if not _passes(level, file_log_level):
                continue
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            f.write(f"[{timestamp}] [{LogLevel.get_name(level)}] {message}\n")
            f.flush()


def get_logger() -> Logger:
    """Get the global logger instance."""
    return Logger.get_instance()
