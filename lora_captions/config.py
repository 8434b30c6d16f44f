"""Run configuration for the caption pipeline.

Everything the pipeline reads from the host environment is collected here,
once, into a ``CaptionConfig``. The processor and the clients only ever see
the resulting object.
"""

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from .clients.gradio import DEFAULT_GRADIO_URL
from .modes import ProcessingMode

DEFAULT_API_NAME = "/stream_chat"
DEFAULT_MODEL = "gpt-4"


@dataclass
class CaptionConfig:
    """
    Settings for one caption run.

    Attributes:
        openai_api_key: Key for the text-generation backend.
        hf_token: Access token presented to the captioning backend.
        gradio_url: Endpoint of the captioning backend.
        openai_base_url: Optional OpenAI-compatible endpoint.
        api_name: Gradio endpoint that returns the caption.
        model: Chat model used for refinement.
        max_tokens: Output budget of a refinement request.
        pacing_seconds: Fixed delay after each refinement attempt.
        max_rate_limit_retries: Retries allowed after a rate-limited request.
        request_timeout: Client-side timeout of each backend call, in seconds.
        log_dir: Directory for the run log and the JSON error log.
        log_level: Console logging level.
        debug_mode: Verbose logging with file/line information.
        show_progress: Display a progress bar while processing.
    """

    openai_api_key: Optional[str] = None
    hf_token: Optional[str] = None
    gradio_url: str = DEFAULT_GRADIO_URL
    openai_base_url: Optional[str] = None
    api_name: str = DEFAULT_API_NAME
    model: str = DEFAULT_MODEL
    max_tokens: int = 1000
    pacing_seconds: float = 60
    max_rate_limit_retries: int = 5
    request_timeout: float = 300
    log_dir: str = "logs"
    log_level: int = logging.INFO
    debug_mode: bool = False
    show_progress: bool = True

    def require_credentials(self, mode: ProcessingMode) -> None:
        """
        Fail fast when a credential needed by ``mode`` is missing.

        Raises:
            ValueError: If a required credential is not set.
        """
        missing = []
        if mode.needs_refinement and not self.openai_api_key:
            missing.append("OPENAI_SECRET")
        if mode.needs_captioning and not self.hf_token:
            missing.append("HF")
        if missing:
            raise ValueError(
                f"Required environment variables {' and '.join(missing)} must be set "
                f"for mode '{mode.value}'"
            )

    def safe_dict(self) -> Dict[str, Any]:
        """Return the configuration with secrets redacted, for logging."""
        data = asdict(self)
        for key in ("openai_api_key", "hf_token"):
            if data.get(key):
                data[key] = "***REDACTED***"
        return data


def _first_set(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def load_config(env: Optional[Mapping[str, str]] = None) -> CaptionConfig:
    """
    Build a configuration from environment variables.

    Args:
        env: Mapping to read from. Defaults to ``os.environ``; call
            ``dotenv.load_dotenv()`` first to pick up a ``.env`` file.

    Returns:
        CaptionConfig: Configuration with credentials and endpoints filled in.
    """
    if env is None:
        env = os.environ

    return CaptionConfig(
        openai_api_key=_first_set(env, "OPENAI_SECRET", "OPENAI_API_KEY"),
        hf_token=_first_set(env, "HF", "HF_TOKEN"),
        gradio_url=_first_set(env, "GRADIO_URL") or DEFAULT_GRADIO_URL,
        openai_base_url=_first_set(env, "OPENAI_BASE_URL"),
    )
