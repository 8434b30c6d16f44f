import concurrent.futures
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from gradio_client import Client, handle_file

DEFAULT_GRADIO_URL = "http://127.0.0.1:7860/"

# Job.result raises the concurrent.futures variant before Python 3.11
TIMEOUT_ERRORS = (TimeoutError, concurrent.futures.TimeoutError)


class GradioCaptionClient:
    """
    Captioning client for a Gradio app such as JoyCaption.

    The Gradio session is opened on first use and reused across images. It is
    discarded after any failure so that the next image reconnects. Failures
    never propagate: they are logged and reported as ``None``.
    """

    def __init__(self,
                 url: str = DEFAULT_GRADIO_URL,
                 hf_token: Optional[str] = None,
                 api_name: str = "/stream_chat",
                 timeout: float = 300):
        """
        Initialize the captioning client.

        Args:
            url: Address of the Gradio app.
            hf_token: Hugging Face token presented when connecting.
            api_name: Endpoint that takes an image and returns its caption.
            timeout: Seconds to wait for one caption before giving up.
        """
        self.url = url
        self.hf_token = hf_token
        self.api_name = api_name
        self.timeout = timeout

        self._client = None
        self.error_handler = None
        self.logger = logging.getLogger(__name__)

    def set_error_handler(self, error_handler) -> None:
        """Use ``error_handler`` for logging and error tracking."""
        self.error_handler = error_handler
        self.logger = error_handler.logger

    def _connect(self) -> Client:
        if self._client is None:
            self._client = Client(self.url, hf_token=self.hf_token, verbose=False)
            self.logger.info(f"Connected to Gradio app at {self.url}")
        return self._client

    @staticmethod
    def normalize_result(result: Any) -> Optional[str]:
        """Join multi-segment results with newlines; blank results become None."""
        if result is None:
            return None
        if isinstance(result, (list, tuple)):
            text = "\n".join(str(segment) for segment in result if segment is not None)
        else:
            text = str(result)
        return text if text.strip() else None

    def caption(self, image_bytes: bytes, file_name_hint: str) -> Optional[str]:
        """
        Caption one image.

        Args:
            image_bytes: Raw content of the image file.
            file_name_hint: Original file name, used for the upload suffix and logs.

        Returns:
            The caption text, or None if the backend could not produce one.
        """
        suffix = Path(file_name_hint).suffix or ".png"
        fd, tmp_path = tempfile.mkstemp(suffix=suffix, prefix="caption_")
        job = None
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(image_bytes)

            client = self._connect()
            self.logger.debug(f"Sending {file_name_hint} ({len(image_bytes)} bytes) to {self.api_name}")
            job = client.submit(handle_file(tmp_path), api_name=self.api_name)
            result = job.result(timeout=self.timeout)

            text = self.normalize_result(result)
            if text is None:
                raise ValueError("Empty caption returned by Gradio app")

            self.logger.info(f"Prediction result for {file_name_hint}: {text}")
            return text

        except Exception as e:
            if job is not None:
                # Leave no prediction running on the backend
                try:
                    job.cancel()
                except Exception as cancel_error:
                    self.logger.debug(f"Could not cancel prediction for {file_name_hint}: {cancel_error}")
            self._client = None
            self._report(e, file_name_hint)
            return None

        finally:
            try:
                os.remove(tmp_path)
            except OSError:
                self.logger.debug(f"Could not remove temporary file {tmp_path}")

    def _report(self, error: Exception, file_name_hint: str) -> None:
        if self.error_handler:
            category = 'timeout_error' if isinstance(error, TIMEOUT_ERRORS) else 'api_communication'
            self.error_handler.handle_api_error(error, {
                'backend': 'gradio',
                'url': self.url,
                'api_name': self.api_name,
                'file_name': file_name_hint,
                'error_category': category,
            })
        else:
            self.logger.error(f"Error processing {file_name_hint} with Gradio client: {error}")
