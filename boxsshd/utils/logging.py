"""Logging infrastructure for boxsshd.

Two output modes:
1. CLI mode: Rich console output for interactive commands (``boxsshd config``)
2. Daemon mode: plain stderr handler for the long-running server

Both modes always write to a rotating log file.

Usage:
    from boxsshd.utils.logging import get_logger, configure_logging

    # In the entry point:
    configure_logging(debug=debug, daemon=True)

    # In any module:
    logger = get_logger(__name__)
    logger.info("Listening on 0.0.0.0:2232")
    logger.error("Exec failed", exc=exception)

Environment Variables:
    BOXSSHD_DEBUG=1          Enable debug mode (verbose output)
    BOXSSHD_LOG_LEVEL=DEBUG  Set log level (DEBUG, INFO, WARNING, ERROR)
    BOXSSHD_LOG_FILE=/path   Override log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from boxsshd.paths import HostPaths

ROOT_LOGGER = "boxsshd"

# Global state
_configured = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

# Shared Rich console instance
console = Console(stderr=True)

# Custom log level for success messages
SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def _get_log_file() -> Path:
    """Get the log file path, creating its directory if needed."""
    global _log_file
    if _log_file:
        return _log_file

    env_log_file = os.environ.get("BOXSSHD_LOG_FILE")
    if env_log_file:
        _log_file = Path(env_log_file)
    else:
        _log_file = HostPaths.log_file()

    _log_file.parent.mkdir(parents=True, exist_ok=True)
    return _log_file


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode or os.environ.get("BOXSSHD_DEBUG", "").lower() in ("1", "true", "yes")


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure the logging system.

    Called once at startup. Later calls are ignored unless ``force`` is set,
    which the ``serve`` command uses to switch an already configured CLI
    logger into daemon mode.

    Args:
        debug: Enable debug mode (verbose output, debug to console)
        daemon: Daemon mode (stderr handler, no Rich formatting)
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Override log file path
        force: Reconfigure even if logging was already configured
    """
    global _configured, _debug_mode, _daemon_mode, _log_file

    if _configured and not force:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon

    if log_file:
        _log_file = log_file

    if log_level:
        level_name = log_level.upper()
    else:
        level_name = os.environ.get("BOXSSHD_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO").upper()

    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # File handler with rotation (captures everything)
    try:
        file_handler = RotatingFileHandler(
            _get_log_file(),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
    except OSError:
        # Can't write log file, continue without it
        pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s: %(levelname)s: %(message)s")
        )
        root_logger.addHandler(stderr_handler)

    _configured = True

    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )


class boxsshdLogger:
    """Logger wrapper with Rich console output.

    In daemon mode every record already reaches stderr through the handler
    installed by configure_logging(), so console echoing is skipped there.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _echo(self, markup: str) -> None:
        if not _daemon_mode:
            self.console.print(markup)

    def debug(self, message: str, console_output: bool = False) -> None:
        """Log debug message.

        Debug only goes to the log file unless console_output is set or
        BOXSSHD_DEBUG is enabled.
        """
        self.logger.debug(message)
        if console_output or is_debug_mode():
            self._echo(f"[dim][DEBUG] {message}[/dim]")

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        if console_output:
            self._echo(f"[blue]{message}[/blue]")

    def success(self, message: str, console_output: bool = True) -> None:
        self.logger.log(SUCCESS_LEVEL, message)
        if console_output:
            self._echo(f"[green]✓ {message}[/green]")

    def warning(self, message: str, console_output: bool = True) -> None:
        self.logger.warning(message)
        if console_output:
            self._echo(f"[yellow]⚠ {message}[/yellow]")

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log error message.

        Args:
            message: Error message
            exc: Optional exception; its traceback goes to the log
            console_output: Output to console
        """
        if exc:
            error_msg = f"{message}: {exc}"
            self.logger.error(error_msg, exc_info=exc)
        else:
            error_msg = message
            self.logger.error(message)

        if console_output:
            self._echo(f"[red]✗ {error_msg}[/red]")

    def exception(self, message: str, console_output: bool = True) -> None:
        """Log exception with full traceback. Call from within an except block."""
        self.logger.exception(message)
        if console_output and not _daemon_mode:
            self.console.print(f"[red]✗ {message}[/red]")
            if is_debug_mode():
                self.console.print_exception()


def get_logger(name: str) -> boxsshdLogger:
    """Get a logger for a module (typically ``__name__``)."""
    if not _configured:
        configure_logging()

    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return boxsshdLogger(name)


def log_startup_info() -> None:
    """Log startup diagnostic information."""
    logger = get_logger("boxsshd.startup")
    logger.debug(f"Python: {sys.version}")
    logger.debug(f"Platform: {sys.platform}")
    logger.debug(f"Debug mode: {is_debug_mode()}")
    logger.debug(f"Log file: {_get_log_file()}")

    for var in ["BOXSSHD_DEBUG", "BOXSSHD_LOG_LEVEL", "BOXSSHD_CONFIG"]:
        value = os.environ.get(var)
        if value:
            logger.debug(f"ENV {var}={value}")
