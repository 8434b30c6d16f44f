import logging
import time
from typing import Callable, Optional

import openai
from openai import OpenAI

from ..modes import SemanticRole

DEFAULT_RETRY_AFTER_SECONDS = 60.0

ROLE_INSTRUCTIONS = {
    SemanticRole.SUBJECT: (
        'The trigger word refers to a character or subject in the image, such as "man", "boy", '
        '"figure". Your task is to replace appropriate subject-related words with the trigger word. '
    ),
    SemanticRole.STYLE: (
        'The trigger word refers to the artistic style of the image. Your task is to insert the '
        'trigger word where it makes sense, especially in references to the overall style, '
        'textures, or aesthetic elements. '
    ),
}


class OpenAIClient:
    """
    Refinement client backed by the OpenAI chat completions API.

    Rewrites a raw caption so that it carries the run's trigger word. A
    rate-limited request is retried after the delay advertised by the API
    (60 seconds when none is given), up to ``max_rate_limit_retries`` times.
    Every other failure is logged and reported as ``None``.
    """

    def __init__(self,
                 model: str = "gpt-4",
                 max_tokens: int = 1000,
                 base_url: Optional[str] = None,
                 api_key: Optional[str] = None,
                 timeout: float = 300,
                 max_rate_limit_retries: int = 5,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the OpenAI client.

        Args:
            model: Chat model used for refinement.
            max_tokens: Maximum number of tokens in the refined caption.
            base_url: Optional base URL for OpenAI-compatible endpoints.
            api_key: API key; may contain surrounding quotes or whitespace.
            timeout: Client-side timeout of one request, in seconds.
            max_rate_limit_retries: Retries allowed after rate-limited requests.
            sleep: Function used to wait before a retry.
        """
        self.model = model
        self.max_tokens = max_tokens
        self.base_url = base_url
        self.timeout = timeout
        self.max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep
        self.interrupted = False

        self._client = None
        self.error_handler = None
        self.logger = logging.getLogger(__name__)

        if api_key:
            self.set_api_key(api_key)

    def set_error_handler(self, error_handler) -> None:
        """Use ``error_handler`` for logging and error tracking."""
        self.error_handler = error_handler
        self.logger = error_handler.logger

    @staticmethod
    def clean_api_key(api_key: str) -> str:
        """
        Strip whitespace and surrounding quotes from an API key.

        Raises:
            ValueError: If the key is empty before or after cleaning.
        """
        if not api_key:
            raise ValueError("API key cannot be empty or None")

        cleaned_key = api_key.strip()
        if len(cleaned_key) >= 2 and cleaned_key[0] == cleaned_key[-1] and cleaned_key[0] in "\"'":
            cleaned_key = cleaned_key[1:-1].strip()

        if not cleaned_key:
            raise ValueError("API key is empty after cleaning quotes and whitespace")
        return cleaned_key

    def set_api_key(self, api_key: str) -> None:
        """
        Configure the API key and create the underlying SDK client.

        The SDK's own retries are disabled; rate limits are handled by ``refine``.
        """
        self.api_key = self.clean_api_key(api_key)

        client_kwargs = {
            "api_key": self.api_key,
            "timeout": self.timeout,
            "max_retries": 0,
        }
        if self.base_url:
            client_kwargs["base_url"] = self.base_url
        self._client = OpenAI(**client_kwargs)

    @staticmethod
    def build_prompt(trigger_word: str, role: SemanticRole) -> str:
        """Instruction placed in front of the raw caption."""
        prompt = f'I am providing a text file. The trigger word is "{trigger_word}". '
        return prompt + ROLE_INSTRUCTIONS[SemanticRole(role)]

    def refine(self, trigger_word: str, raw_caption: str, role: SemanticRole) -> Optional[str]:
        """
        Rewrite ``raw_caption`` so that it uses ``trigger_word``.

        Args:
            trigger_word: Token to inject into the caption.
            raw_caption: Caption text produced by the captioning backend.
            role: Whether the trigger word is a subject or a style.

        Returns:
            The refined caption, or None if the request failed.
        """
        if not self._client:
            raise ValueError("API key not configured. Call set_api_key() first.")

        messages = [
            {"role": "user", "content": self.build_prompt(trigger_word, role) + "\n\n" + raw_caption}
        ]

        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=self.max_tokens,
                )
                content = response.choices[0].message.content if response.choices else None
                if not content or not content.strip():
                    raise ValueError("Empty response from refinement backend")
                self.logger.debug(f"Refinement succeeded on attempt {attempt}")
                return content.strip()

            except openai.RateLimitError as e:
                if attempt > self.max_rate_limit_retries:
                    self._report(e, attempt)
                    return None
                retry_after = self.retry_after_seconds(e)
                self.logger.warning(
                    f"Rate limit reached. Retrying after {retry_after} seconds "
                    f"(retry {attempt}/{self.max_rate_limit_retries})..."
                )
                if not self._wait(retry_after):
                    self.logger.warning("Rate-limit wait interrupted, giving up on this caption")
                    return None

            except Exception as e:
                self._report(e, attempt)
                return None

    def interrupt(self) -> None:
        """Abandon any rate-limit wait in progress."""
        self.interrupted = True

    def _wait(self, seconds: float) -> bool:
        """Sleep in one-second slices; False if interrupted before the end."""
        remaining = seconds
        while remaining > 0:
            if self.interrupted:
                return False
            chunk = min(1, remaining)
            self._sleep(chunk)
            remaining -= chunk
        return not self.interrupted

    @staticmethod
    def retry_after_seconds(error: Exception) -> float:
        """
        Delay advertised by a rate-limited response.

        Reads ``retry-after-ms`` or ``retry-after`` from the response headers and
        falls back to 60 seconds when neither holds a positive number.
        """
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None) or {}

        retry_ms = headers.get("retry-after-ms")
        if retry_ms:
            try:
                seconds = float(retry_ms) / 1000
                if seconds > 0:
                    return seconds
            except (TypeError, ValueError):
                pass

        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                seconds = float(retry_after)
                if seconds > 0:
                    return seconds
            except (TypeError, ValueError):
                pass

        return DEFAULT_RETRY_AFTER_SECONDS

    def _report(self, error: Exception, attempt: int) -> None:
        http_status = getattr(error, 'status_code', None)
        if self.error_handler:
            self.error_handler.handle_api_error(error, {
                'backend': 'openai',
                'model': self.model,
                'attempt': attempt,
                'http_status': http_status,
                'error_category': self._categorize_api_error(error, http_status),
            })
        else:
            self.logger.error(f"Error refining text with OpenAI: {error}")

    @staticmethod
    def _categorize_api_error(error: Exception, http_status: Optional[int]) -> str:
        if isinstance(error, openai.RateLimitError):
            return 'api_rate_limit'
        elif isinstance(error, openai.AuthenticationError):
            return 'api_authentication'
        elif isinstance(error, openai.PermissionDeniedError):
            return 'api_permission_denied'
        elif isinstance(error, openai.BadRequestError):
            return 'api_bad_request'
        elif isinstance(error, openai.APITimeoutError):
            return 'timeout_error'
        elif isinstance(error, openai.APIConnectionError):
            return 'network_error'
        elif http_status and 500 <= http_status < 600:
            return 'api_server_error'
        elif http_status and 400 <= http_status < 500:
            return 'api_client_error'
        return 'api_communication'

    def get_model_info(self) -> str:
        """Model configuration formatted for display."""
        info_lines = [
            f"📋 Model: {self.model}",
            f"📋 Max Tokens: {self.max_tokens}",
            f"📋 Rate-limit retries: {self.max_rate_limit_retries}",
        ]
        if self.base_url:
            info_lines.append(f"📋 Base URL: {self.base_url}")
        return "\n".join(info_lines)
