"""
Logging utilities for the bot fleet controller
"""
import logging
import pprint
import sys
from typing import Any, Optional, Sequence

# Core library loggers whose output is routed through the same handler
MANAGED_LOGGERS: Sequence[str] = ("fleet_control",)


class FleetLogger:
    """Logger for fleet operations with debug mode support"""

    def __init__(self, name: str = "botfleet", debug: bool = False, verbose: bool = False):
        self.logger = logging.getLogger(name)
        self.debug_mode = debug
        self.verbose_mode = verbose

        # Set level based on mode
        if debug:
            level = logging.DEBUG
        elif verbose:
            level = logging.INFO
        else:
            level = logging.WARNING

        handler = logging.StreamHandler(sys.stdout)

        if debug:
            formatter = logging.Formatter('[%(levelname)s] %(name)s:%(lineno)d - %(message)s')
        else:
            formatter = logging.Formatter('%(asctime)s %(message)s', datefmt='%H:%M:%S')

        handler.setFormatter(formatter)

        for logger in [self.logger] + [logging.getLogger(n) for n in MANAGED_LOGGERS]:
            # Remove existing handlers to avoid duplication
            logger.handlers.clear()
            logger.setLevel(level)
            logger.addHandler(handler)
            logger.propagate = False

    def debug(self, message: str) -> None:
        """Log debug message"""
        self.logger.debug(f"DEBUG: {message}")

    def info(self, message: str) -> None:
        """Log info message"""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log warning message"""
        self.logger.warning(f"⚠️  {message}")

    def error(self, message: str) -> None:
        """Log error message"""
        self.logger.error(f"❌ Error: {message}")

    def success(self, message: str) -> None:
        """Log success message"""
        self.logger.info(f"✓ {message}")

    def cycle_info(self, message: str) -> None:
        """Log control cycle information"""
        self.logger.info(f"🔁 {message}")

    def host_info(self, message: str) -> None:
        """Log backend host information"""
        self.logger.info(f"🖥️  {message}")

    def policy_info(self, message: str) -> None:
        """Log scaling policy information"""
        self.logger.info(f"🎯 {message}")

    def audit(self, message: str, data: Any = None, label: Optional[str] = None) -> None:
        """Log a labelled message with a pretty-printed payload"""
        header = f"[{label}] " if label else ""
        if data is not None:
            self.logger.info(f"{header}{message}\n{pprint.pformat(data, sort_dicts=False)}")
        else:
            self.logger.info(f"{header}{message}")


# Global logger instance
_logger: Optional[FleetLogger] = None


def get_logger(debug: bool = False, verbose: bool = False) -> FleetLogger:
    """Get or create the global logger instance"""
    global _logger
    # If no parameters provided and logger exists, return existing logger
    if not debug and not verbose and _logger is not None:
        return _logger
    if _logger is None or _logger.debug_mode != debug or _logger.verbose_mode != verbose:
        _logger = FleetLogger(debug=debug, verbose=verbose)
    return _logger

