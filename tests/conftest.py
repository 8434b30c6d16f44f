import pytest

from lora_captions.utils.error_handler import ErrorHandler
from tests.helpers import SleepRecorder


@pytest.fixture
def error_handler(tmp_path):
    handler = ErrorHandler(log_dir=str(tmp_path / "logs"))
    yield handler
    handler.close()


@pytest.fixture
def sleeper():
    return SleepRecorder()
