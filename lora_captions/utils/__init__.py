"""Utilities module for batch caption processing and error handling.

This module provides the file processor that walks an image folder and the
error handler that carries logging and error tracking for a run.
"""

from .file_processor import FileProcessor
from .error_handler import ErrorHandler

__all__ = [
    'FileProcessor',
    'ErrorHandler',
]
