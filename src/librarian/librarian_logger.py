"""
Structured logging for librarian.
"""

import inspect
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel


class LogLine(BaseModel):
    """
    Represents a line in the librarian log
    """

    time: str
    level: str
    caller_file: str
    caller_name: str
    caller_line: int
    message: str


class LibrarianLogger:
    """
    Logger class wrapping the "librarian" stdlib logger.

    Build scripts run as short-lived processes whose stdout is parsed by the
    build tool, so nothing here ever writes to stdout directly.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("librarian")
        # Keep a level the host build script already chose.
        if logger is None and self.logger.level == logging.NOTSET:
            self.logger.setLevel(logging.INFO)

    def log(self, debug_message: str, level: int) -> None:
        """
        Log the debug message as a structured JSON line.
        """
        debug_message = debug_message.replace("\n", " ")

        caller_file = "unknown"
        caller_name = "unknown"
        caller_line = 0
        frame = inspect.currentframe()
        caller_frame = frame.f_back if frame is not None else None
        if caller_frame is not None:
            caller_file = caller_frame.f_code.co_filename.split("/")[-1]
            caller_name = caller_frame.f_code.co_name
            caller_line = caller_frame.f_lineno

        line = LogLine(
            time=datetime.now(timezone.utc).isoformat(),
            level=logging.getLevelName(level),
            caller_file=caller_file,
            caller_name=caller_name,
            caller_line=caller_line,
            message=debug_message,
        )
        self.logger.log(level=level, msg=line.model_dump_json())
