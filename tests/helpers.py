from pathlib import Path
from types import SimpleNamespace

import httpx
import openai

CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


def create_dummy_image(path: Path, content: bytes = b"\x89PNG\r\n\x1a\nfake-image-data"):
    """Helper function to create an image file with known bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def make_chat_response(content):
    """Minimal stand-in for a chat completion with one choice."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_rate_limit_error(headers=None):
    """A real openai.RateLimitError carrying the given response headers."""
    request = httpx.Request("POST", CHAT_COMPLETIONS_URL)
    response = httpx.Response(429, headers=headers or {}, request=request)
    return openai.RateLimitError("Rate limit reached", response=response, body=None)


class SleepRecorder:
    """Stands in for time.sleep and records the requested delays."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def total(self):
        return sum(self.calls)


class FakeCaptionClient:
    """Returns a caption per file name; a missing name means the backend failed."""

    def __init__(self, captions=None, default="a photo of a man in a red coat"):
        self.captions = captions or {}
        self.default = default
        self.calls = []

    def caption(self, image_bytes, file_name_hint):
        self.calls.append((file_name_hint, image_bytes))
        result = self.captions.get(file_name_hint, self.default)
        if isinstance(result, Exception):
            raise result
        return result


class FakeRefineClient:
    """Prefixes the trigger word, or returns the queued results in order."""

    def __init__(self, results=None):
        self.results = list(results) if results is not None else None
        self.calls = []

    def refine(self, trigger_word, raw_caption, role):
        self.calls.append((trigger_word, raw_caption, role))
        if self.results is not None:
            return self.results.pop(0)
        return f"{trigger_word}: {raw_caption}"
