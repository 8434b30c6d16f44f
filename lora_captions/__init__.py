"""LoRA Dataset Caption Pipeline

This package captions a folder of training images and rewrites every caption
around a trigger word, writing one ``<image stem>.txt`` file per image. It is
resumable: images whose text file already exists are skipped.

Main components:
- GradioCaptionClient: captions images through a Gradio app (JoyCaption)
- OpenAIClient: refines captions with OpenAI chat models, with rate-limit backoff
- FileProcessor: sequential, resumable batch processing of an image folder
- ErrorHandler: logging and error tracking for a run
- CaptionExtractor: main orchestrator used by the ``caption-tool`` command

Usage:
    from lora_captions import CaptionExtractor, ProcessingMode, SemanticRole, load_config

    config = load_config()
    extractor = CaptionExtractor(config, ProcessingMode.CAPTION_AND_REFINE)
    results = extractor.extract_captions('downloads', 'training_data', 'zxc', SemanticRole.SUBJECT)
"""

__version__ = "1.0.0"
__description__ = "Caption and trigger-word refinement pipeline for LoRA datasets"

from .clients import create_client, GradioCaptionClient, OpenAIClient
from .config import CaptionConfig, load_config
from .extract_captions import CaptionExtractor, select_mode
from .modes import ProcessingMode, SemanticRole
from .utils.file_processor import FileProcessor
from .utils.error_handler import ErrorHandler

__all__ = [
    'create_client',
    'GradioCaptionClient',
    'OpenAIClient',
    'CaptionConfig',
    'load_config',
    'CaptionExtractor',
    'select_mode',
    'ProcessingMode',
    'SemanticRole',
    'FileProcessor',
    'ErrorHandler',
]
