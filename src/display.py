"""
Centralized display utilities for console output and progress tracking.
Provides standardized progress bars, summary tables and logging displays using rich.
"""

import logging
import os
from collections import deque
from collections.abc import Mapping
from typing import Any, Protocol, cast

from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

SUCCESS_LEVEL = 25
NOTICE_LEVEL = 21


# Protocol for the logger extended with success and notice methods
class ExtendedLogger(Protocol):
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def critical(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def success(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def notice(self, msg: str, *args: Any, **kwargs: Any) -> None: ...
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


LOGGING_THEME = Theme(
    {
        "logging.level.debug": "dim",
        "logging.level.info": "blue",
        "logging.level.notice": "cyan",
        "logging.level.warning": "bold yellow",
        "logging.level.error": "bold red",
        "logging.level.critical": "bold red on white",
        "logging.level.success": "bold green",
    }
)

# Global console instance with theme
console = Console(theme=LOGGING_THEME)

rich_handler = RichHandler(
    console=console,
    rich_tracebacks=True,
    tracebacks_show_locals=False,
    markup=False,
    show_time=True,
    show_level=True,
    enable_link_path=True,
    log_time_format="[%X]",
)


def configure_logging(
    level: str = "INFO", log_file: str | os.PathLike[str] | None = None
) -> ExtendedLogger:
    """
    Configure logging with rich formatting.

    Args:
        level: Logging level (DEBUG, INFO, NOTICE, SUCCESS, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file

    Returns:
        Configured logger instance
    """
    logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")
    logging.addLevelName(NOTICE_LEVEL, "NOTICE")

    match level.upper():
        case "NOTICE":
            numeric_level = NOTICE_LEVEL
        case "SUCCESS":
            numeric_level = SUCCESS_LEVEL
        case other:
            numeric_level = getattr(logging, other, logging.INFO)

    handlers: list[logging.Handler] = [rich_handler]

    if log_file:
        log_dir = os.path.dirname(os.fspath(log_file))
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        file_format = logging.Formatter(
            "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
        )
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(file_format)
        file_handler.setLevel(numeric_level)
        handlers.append(file_handler)

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )

    logger = logging.getLogger("migration")

    def success(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
        if self.isEnabledFor(SUCCESS_LEVEL):
            self._log(SUCCESS_LEVEL, message, args, stacklevel=2, **kwargs)

    def notice(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
        if self.isEnabledFor(NOTICE_LEVEL):
            self._log(NOTICE_LEVEL, message, args, stacklevel=2, **kwargs)

    setattr(logging.Logger, "success", success)
    setattr(logging.Logger, "notice", notice)

    logger.debug("Rich logging configured")
    if log_file:
        logger.debug("Log file: %s", log_file)

    return cast(ExtendedLogger, logger)


def print_summary(title: str, counters: Mapping[str, Any]) -> None:
    """Render phase counters as a two-column table.

    Nested mappings (such as the status distribution) are flattened into
    indented rows below their parent key.
    """
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in counters.items():
        if isinstance(value, Mapping):
            table.add_row(Text(key, style="bold"), "")
            for sub_key, sub_value in value.items():
                table.add_row(f"  {sub_key}", str(sub_value))
            continue
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


class ProgressTracker:
    """Progress bar for push and download loops, with the last few outcomes listed under it.

    Use as a context manager; outside the ``with`` block updates only move
    the underlying task.
    """

    def __init__(
        self,
        description: str,
        total: int,
        log_title: str = "Recent Items",
        max_log_items: int = 5,
    ) -> None:
        self.description = description
        self.total = total
        self.log_title = log_title
        self.progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("({task.completed}/{task.total})"),
            console=console,
        )
        self.task_id = self.progress.add_task(description, total=total)
        self.recent_items: deque[str] = deque(maxlen=max_log_items)
        self.processed_count = 0
        self.live: Live | None = None

    def __enter__(self) -> "ProgressTracker":
        self.live = Live(console=console, refresh_per_second=2, vertical_overflow="ellipsis")
        self.live.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self.live:
            self.live.__exit__(exc_type, exc_val, exc_tb)
            self.live = None

    def add_log_item(self, item: str) -> None:
        self.recent_items.append(item)
        self._refresh()

    def increment(self, advance: int = 1) -> None:
        self.processed_count += advance
        self.progress.update(self.task_id, completed=self.processed_count)
        self._refresh()

    def _refresh(self) -> None:
        if self.live is None:
            return
        if not self.recent_items:
            self.live.update(self.progress)
            return

        log_table = Table.grid(padding=(0, 1))
        log_table.add_column()
        log_table.add_row(Text(f"{self.log_title}:", style="bold yellow"))
        for item in self.recent_items:
            log_table.add_row(Text(f"  - {item}"))
        combined = Table.grid(padding=1)
        combined.add_column()
        combined.add_row(self.progress)
        combined.add_row(log_table)
        self.live.update(Panel.fit(combined, title=self.description, border_style="blue"))
