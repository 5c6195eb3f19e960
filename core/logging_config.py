import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime, timezone


# Third-party loggers that are too chatty at DEBUG/INFO for a gateway log
NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "uvicorn.access", "asyncio")


class LoggingConfig:
    """Centralized logging configuration for the gateway supervisor"""

    def __init__(
        self,
        log_level: str = "INFO",
        log_file_path: str = "logs/gateway.log",
        max_file_size: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 5,
        log_format: Optional[str] = None,
        console_logging: bool = True,
        quiet_libraries: bool = True
    ):
        """
        Initialize logging configuration.

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file_path: Path to the log file
            max_file_size: Maximum size per log file in bytes
            backup_count: Number of backup files to keep
            log_format: Custom log format string
            console_logging: Whether to also log to console
            quiet_libraries: Raise HTTP client and access loggers to WARNING
        """
        self.log_level = log_level.upper()
        self.log_file_path = log_file_path
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.console_logging = console_logging
        self.quiet_libraries = quiet_libraries

        self.log_format = log_format or (
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

        self._validate_config()

    def _validate_config(self):
        """Validate logging configuration parameters"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_levels:
            raise ValueError(f"Invalid log level: {self.log_level}. Must be one of: {valid_levels}")

        if self.max_file_size <= 0:
            raise ValueError("max_file_size must be positive")

        if self.backup_count <= 0:
            raise ValueError("backup_count must be positive")

    def setup_logging(self) -> Dict[str, Any]:
        """
        Set up centralized logging for the whole process.

        Returns:
            Dictionary with setup results and configuration details
        """
        try:
            log_dir = Path(self.log_file_path).parent
            log_dir.mkdir(parents=True, exist_ok=True)

            root_logger = logging.getLogger()

            # Clear any existing handlers to avoid duplicates
            for handler in list(root_logger.handlers):
                root_logger.removeHandler(handler)
                handler.close()

            root_logger.setLevel(getattr(logging, self.log_level))

            formatter = logging.Formatter(
                fmt=self.log_format,
                datefmt="%Y-%m-%d %H:%M:%S"
            )

            file_handler = logging.handlers.RotatingFileHandler(
                filename=self.log_file_path,
                maxBytes=self.max_file_size,
                backupCount=self.backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(getattr(logging, self.log_level))
            root_logger.addHandler(file_handler)

            if self.console_logging:
                console_handler = logging.StreamHandler()
                console_handler.setFormatter(formatter)
                console_handler.setLevel(getattr(logging, self.log_level))
                root_logger.addHandler(console_handler)

            if self.quiet_libraries and self.log_level != "DEBUG":
                for name in NOISY_LOGGERS:
                    logging.getLogger(name).setLevel(logging.WARNING)

            setup_logger = logging.getLogger("logging_config")
            setup_logger.info(
                f"Centralized logging initialized - Level: {self.log_level}, "
                f"File: {self.log_file_path}, Max Size: {self.max_file_size/1024/1024:.1f}MB, "
                f"Backups: {self.backup_count}, Console: {self.console_logging}"
            )

            handlers_configured = []
            for handler in root_logger.handlers:
                if isinstance(handler, logging.handlers.RotatingFileHandler):
                    handlers_configured.append("file")
                elif isinstance(handler, logging.StreamHandler):
                    handlers_configured.append("console")
                else:
                    handlers_configured.append("other")

            return {
                "success": True,
                "log_level": self.log_level,
                "log_file_path": self.log_file_path,
                "max_file_size": self.max_file_size,
                "backup_count": self.backup_count,
                "console_logging": self.console_logging,
                "handlers_count": len(root_logger.handlers),
                "handlers_configured": handlers_configured
            }

        except OSError as e:
            # An unwritable log directory must not stop the gateway from serving
            logging.basicConfig(
                level=logging.WARNING,
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )

            fallback_logger = logging.getLogger("logging_config")
            fallback_logger.error(f"Failed to set up centralized logging: {e}")

            return {
                "success": False,
                "error": str(e),
                "fallback_active": True
            }

    def log_system_info(self):
        """Log process information and configuration at startup"""
        info_logger = logging.getLogger("system")
        info_logger.info(f"Gateway supervisor starting - {datetime.now(timezone.utc).isoformat()} (pid {os.getpid()})")
        info_logger.info(f"Log file location: {os.path.abspath(self.log_file_path)}")
        info_logger.info(f"Log rotation: {self.max_file_size/1024/1024:.1f}MB per file, {self.backup_count} backups")


def setup_application_logging(
    log_level: str = "INFO",
    log_file_path: str = "logs/gateway.log",
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console_logging: bool = True,
    log_format: Optional[str] = None
) -> Dict[str, Any]:
    """
    Convenience function to set up logging for the entire process.

    Returns:
        Setup results dictionary
    """
    try:
        config = LoggingConfig(
            log_level=log_level,
            log_file_path=log_file_path,
            max_file_size=max_file_size,
            backup_count=backup_count,
            log_format=log_format,
            console_logging=console_logging
        )
    except ValueError as e:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        logging.getLogger("logging_config").error(f"Failed to set up centralized logging: {e}")
        return {
            "success": False,
            "error": str(e),
            "fallback_active": True
        }

    result = config.setup_logging()
    if result["success"]:
        config.log_system_info()
    return result


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module or service."""
    return logging.getLogger(name)
