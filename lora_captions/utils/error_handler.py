import concurrent.futures
import json
import logging
import os
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ErrorHandler:
    """
    Logging and error tracking for a caption run.

    One instance is created per run and handed to the file processor and the
    backend clients. It owns the console and file log handlers, keeps error
    counts per category and writes a JSON error log that can be inspected
    after the run.
    """

    def __init__(self, log_dir: str = "logs", log_level: int = logging.INFO,
                 debug_mode: bool = False, logger_name: str = "lora_captions"):
        """
        Initialize the error handler.

        Args:
            log_dir: Directory for the run log and the JSON error log.
            log_level: Console logging level.
            debug_mode: Enable file/line information and verbose error context.
            logger_name: Name of the logger to configure.
        """
        self.log_dir = Path(log_dir)
        self.debug_mode = debug_mode
        self.log_dir.mkdir(exist_ok=True, parents=True)

        self.error_counts = {
            'api_errors': 0,
            'file_errors': 0,
            'validation_errors': 0,
            'unknown_errors': 0
        }
        self.error_details = []
        self.start_time = datetime.now()

        self._setup_logging(log_level, logger_name)

        self.error_log_file = self.log_dir / f"errors_{datetime.now().strftime('%Y%m%d')}.json"

        if self.debug_mode:
            self.logger.debug(f"Log directory: {self.log_dir}")
            self.logger.debug(f"Error log file: {self.error_log_file}")

    def _setup_logging(self, log_level: int, logger_name: str) -> None:
        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if self.debug_mode else log_level)
        if self.debug_mode:
            console_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
            )
        else:
            console_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        console_handler.setFormatter(console_formatter)
        self.logger.addHandler(console_handler)

        # Everything goes to the file regardless of the console level
        self.log_file = self.log_dir / f"caption_run_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        self.logger.addHandler(file_handler)

        self.logger.debug(f"Logging initialized. Log file: {self.log_file}")

    # Logging capability used by the processor and the clients

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def step(self, message: str) -> None:
        self.logger.info(f"📍 {message}")

    def success(self, message: str) -> None:
        self.logger.info(f"✅ {message}")

    def handle_error(self,
                     error: Exception,
                     context: Dict[str, Any],
                     error_type: str = "unknown") -> None:
        """
        Record and log an error with context information.

        Args:
            error: The exception that occurred.
            context: Where and on what the error occurred (file, backend, ...).
            error_type: One of api, file, validation, unknown.
        """
        error_key = f"{error_type}_errors"
        if error_key in self.error_counts:
            self.error_counts[error_key] += 1
        else:
            self.error_counts['unknown_errors'] += 1

        error_record = {
            'timestamp': datetime.now().isoformat(),
            'error_type': error_type,
            'error_class': error.__class__.__name__,
            'error_message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': context
        }
        self.error_details.append(error_record)

        if self.debug_mode:
            self.logger.error(f"[{error_type.upper()}] {error.__class__.__name__}: {error}")
            self.logger.debug(f"Error context: {json.dumps(context, indent=2, default=str)}")
            self.logger.debug(f"Full traceback:\n{error_record['traceback']}")
        else:
            self.logger.error(
                f"[{error_type.upper()}] {error.__class__.__name__}: {error} | Context: {context}"
            )

        self._save_error_log(error_record)

    def handle_api_error(self, error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Categorize and record an error returned by one of the backends.

        Args:
            error: The backend exception.
            context: Backend, file name, HTTP status and similar details.
        """
        if context is None:
            context = {}

        error_message = str(error).lower()
        http_status = context.get('http_status')
        error_category = context.get('error_category', 'api_communication')

        is_rate_limit = error_category == 'api_rate_limit' or http_status == 429 or 'rate limit' in error_message
        is_auth_error = (error_category == 'api_authentication' or http_status == 401
                         or 'unauthorized' in error_message)
        is_server_error = error_category == 'api_server_error' or bool(http_status and 500 <= http_status < 600)
        is_timeout_error = (error_category == 'timeout_error'
                            or isinstance(error, (TimeoutError, concurrent.futures.TimeoutError))
                            or 'timeout' in error_message or 'timed out' in error_message)
        is_network_error = (error_category == 'network_error' or isinstance(error, ConnectionError)
                            or 'connection' in error_message)

        context.update({
            'error_category': error_category,
            'is_rate_limit': is_rate_limit,
            'is_auth_error': is_auth_error,
            'is_server_error': is_server_error,
            'is_timeout_error': is_timeout_error,
            'is_network_error': is_network_error,
        })

        if is_rate_limit:
            self.logger.warning(f"Rate limit error (HTTP {http_status}): {error}. Consider a longer pacing interval.")
        elif is_auth_error:
            self.logger.error(f"Authentication error (HTTP {http_status}): {error}. Check API credentials.")
        elif is_server_error:
            self.logger.error(f"Server error (HTTP {http_status}): {error}")
        elif is_timeout_error:
            self.logger.warning(f"Timeout error: {error}. Backend response took too long.")
        elif is_network_error:
            self.logger.warning(f"Network error: {error}. Check that the backend is reachable.")

        self.handle_error(error, context, 'api')

    def handle_file_error(self, error: Exception, file_path: str, operation: str) -> None:
        """
        Record an error raised while reading or writing a file.

        Args:
            error: The file exception.
            file_path: Path to the file being processed.
            operation: What was being done (process, read, write, list, ...).
        """
        context = {
            'file_path': file_path,
            'operation': operation,
            'file_exists': os.path.exists(file_path),
            'error_category': 'file_operation'
        }
        self.handle_error(error, context, 'file')

    def _save_error_log(self, error_record: Dict[str, Any]) -> None:
        try:
            if self.error_log_file.exists():
                with open(self.error_log_file, 'r', encoding='utf-8') as f:
                    errors = json.load(f)
            else:
                errors = []

            errors.append(error_record)

            with open(self.error_log_file, 'w', encoding='utf-8') as f:
                json.dump(errors, f, indent=2, ensure_ascii=False, default=str)
        except (OSError, ValueError) as e:
            self.logger.critical(f"Failed to save error log: {e}")

    def get_error_summary(self) -> Dict[str, Any]:
        """
        Get a summary of all errors recorded so far.

        Returns:
            Dict with counts per category and the ten most recent errors.
        """
        return {
            'error_counts': self.error_counts.copy(),
            'total_errors': sum(self.error_counts.values()),
            'recent_errors': self.error_details[-10:],
            'error_log_file': str(self.error_log_file)
        }

    def get_error_report(self) -> str:
        """Human-readable error report for the end of a run."""
        summary = self.get_error_summary()
        rate_limit_errors = sum(1 for e in self.error_details if e['context'].get('is_rate_limit'))
        timeout_errors = sum(1 for e in self.error_details if e['context'].get('is_timeout_error'))

        report = f"""
=== Error Report ===
Total Errors: {summary['total_errors']}
API Errors: {self.error_counts['api_errors']}
  - Rate Limit Errors: {rate_limit_errors}
  - Timeout Errors: {timeout_errors}
File Errors: {self.error_counts['file_errors']}
Validation Errors: {self.error_counts['validation_errors']}
Unknown Errors: {self.error_counts['unknown_errors']}

Recent Errors:"""

        for i, error in enumerate(summary['recent_errors'][-5:], 1):
            report += f"""
{i}. [{error['error_type'].upper()}] {error['error_class']}: {error['error_message'][:100]}
   Time: {error['timestamp']}
   Context: {error['context']}"""

        report += f"""

Detailed error log: {summary['error_log_file']}
=================="""
        return report

    def summarize(self) -> str:
        """Log and return the session summary banner."""
        end_time = datetime.now()
        duration = (end_time - self.start_time).total_seconds()
        summary = f"""
=================================
Caption Session Summary
=================================
Start Time: {self.start_time.isoformat()}
End Time: {end_time.isoformat()}
Duration: {duration:.1f} seconds
Errors: {sum(self.error_counts.values())}
================================="""
        self.logger.info(summary)
        return summary

    def close(self) -> None:
        """Close all logging handlers to release file handles."""
        for handler in self.logger.handlers[:]:
            handler.close()
            self.logger.removeHandler(handler)
