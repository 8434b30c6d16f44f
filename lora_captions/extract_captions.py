#!/usr/bin/env python3
"""Extract Captions - LoRA dataset caption pipeline

Captions every image of a folder and rewrites the caption around a trigger
word, leaving one ``<image stem>.txt`` file per image for LoRA training.

Usage:
    caption-tool <inputFolder> <outputFolder> <word> <type>
        type is "subject" or "style". When both folders are the same, the
        existing text files are refined in place; otherwise each image is
        captioned by the Gradio app and the caption is refined with OpenAI.

    caption-tool <inputFolder> <outputFolder> <word>
        Caption each image, prefix the caption with the trigger word and copy
        the image next to its text file. No refinement.
"""

import argparse
import logging
import os
import signal
import sys
import time
from dataclasses import replace
from typing import Any, Dict, Optional

from colorama import Fore, Style, init
from dotenv import load_dotenv

from .clients import create_client
from .config import CaptionConfig, load_config
from .modes import ProcessingMode, SemanticRole
from .utils.error_handler import ErrorHandler
from .utils.file_processor import FileProcessor

init(autoreset=True)


def print_header(text: str, color: str = Fore.CYAN):
    """Print a formatted header with colors."""
    separator = "=" * len(text)
    print(f"\n{color}{separator}")
    print(f"{text}")
    print(f"{separator}{Style.RESET_ALL}")


def print_info(label: str, value: str, color: str = Fore.GREEN):
    """Print formatted information with colors."""
    print(f"{color}📋 {label}:{Style.RESET_ALL} {value}")


def print_success(message: str):
    print(f"{Fore.GREEN}✅ {message}{Style.RESET_ALL}")


def print_warning(message: str):
    print(f"{Fore.YELLOW}⚠️  {message}{Style.RESET_ALL}")


def print_error(message: str):
    print(f"{Fore.RED}❌ {message}{Style.RESET_ALL}", file=sys.stderr)


def print_stats(stats: Dict[str, Any]):
    """Print the processing summary with colors."""
    print_header("📊 Processing Summary", Fore.CYAN)

    processed = stats.get('total_processed', 0)
    total = stats.get('total_images', 0)
    print_info("Processed", f"{processed}/{total} images", Fore.GREEN if processed > 0 else Fore.YELLOW)
    print_info("Skipped", str(stats.get('total_skipped', 0)), Fore.CYAN)

    errors = stats.get('total_errors', 0)
    if errors > 0:
        print_info("Errors", str(errors), Fore.RED)

    success_rate = stats.get('success_rate', 0)
    if success_rate >= 90:
        color = Fore.GREEN
    elif success_rate >= 70:
        color = Fore.YELLOW
    else:
        color = Fore.RED
    print_info("Success rate", f"{success_rate:.1f}%", color)

    total_time = stats.get('total_time_seconds', 0)
    if total_time > 0:
        print_info("Total time", f"{total_time:.1f}s", Fore.MAGENTA)


def select_mode(input_folder: str, output_folder: str, role: Optional[str]) -> ProcessingMode:
    """
    Choose the processing mode from the positional arguments.

    Without a role the legacy caption-and-prepend mode is used. With a role,
    identical folder arguments (plain string comparison) mean the captions
    already exist and only need refining.
    """
    if role is None:
        return ProcessingMode.CAPTION_PREPEND
    if input_folder == output_folder:
        return ProcessingMode.REFINE_ONLY
    return ProcessingMode.CAPTION_AND_REFINE


class CaptionExtractor:
    """
    Main caption run orchestrator.

    Builds the error handler, the backend clients needed by the mode and the
    file processor, then runs the processor once over the input folder.
    """

    def __init__(self, config: CaptionConfig, mode: ProcessingMode, sleep=time.sleep):
        """
        Initialize the caption extractor.

        Args:
            config: Run configuration.
            mode: Processing mode selected for the run.
            sleep: Function used for pacing and rate-limit waits.

        Raises:
            ValueError: If a credential required by ``mode`` is missing or unusable.
        """
        self.config = config
        self.mode = ProcessingMode(mode)

        self.error_handler = ErrorHandler(
            log_dir=config.log_dir,
            log_level=config.log_level,
            debug_mode=config.debug_mode
        )

        try:
            config.require_credentials(self.mode)
            self.caption_client = self._create_caption_client() if self.mode.needs_captioning else None
            self.refine_client = self._create_refine_client(sleep) if self.mode.needs_refinement else None
        except ValueError as e:
            self.error_handler.logger.error(str(e))
            self.close()
            raise

        self.file_processor = FileProcessor(
            error_handler=self.error_handler,
            caption_client=self.caption_client,
            refine_client=self.refine_client,
            pacing_seconds=config.pacing_seconds,
            show_progress=config.show_progress,
            sleep=sleep
        )

    def _create_caption_client(self):
        client = create_client(
            'caption',
            url=self.config.gradio_url,
            hf_token=self.config.hf_token,
            api_name=self.config.api_name,
            timeout=self.config.request_timeout
        )
        client.set_error_handler(self.error_handler)
        return client

    def _create_refine_client(self, sleep):
        client = create_client(
            'refine',
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            base_url=self.config.openai_base_url,
            timeout=self.config.request_timeout,
            max_rate_limit_retries=self.config.max_rate_limit_retries,
            sleep=sleep
        )
        client.set_api_key(self.config.openai_api_key)
        client.set_error_handler(self.error_handler)
        return client

    def _signal_handler(self, signum, frame):
        self.error_handler.info(f"Received signal {signum}, stopping after the current image...")
        self.file_processor.interrupt()
        if self.refine_client is not None:
            self.refine_client.interrupt()

    def install_signal_handlers(self) -> Dict[int, Any]:
        """
        Stop at the next image boundary on SIGINT/SIGTERM.

        Returns:
            The handlers that were replaced, for ``restore_signal_handlers``.
        """
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._signal_handler)
        return previous

    @staticmethod
    def restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def extract_captions(self,
                         input_folder: str,
                         output_folder: str,
                         word: str,
                         role: Optional[SemanticRole]) -> Dict[str, Any]:
        """
        Run the file processor once.

        Returns:
            Dict with the run status, statistics and the error summary.
        """
        self.error_handler.info(f"Starting execution with trigger word: \"{word}\" and mode: {self.mode.value}")
        self.error_handler.debug(f"Configuration: {self.config.safe_dict()}")
        if self.refine_client is not None:
            self.error_handler.debug(self.refine_client.get_model_info())

        results = self.file_processor.process_all(input_folder, output_folder, word, role, self.mode)
        self.error_handler.info(self.file_processor.get_processing_summary(results))

        error_summary = self.error_handler.get_error_summary()
        results['error_summary'] = error_summary
        if error_summary['total_errors'] > 0:
            self.error_handler.warning(self.error_handler.get_error_report())

        self.error_handler.summarize()
        return results

    def close(self) -> None:
        self.error_handler.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="caption-tool",
        description="Caption a folder of images for LoRA training and inject a trigger word",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  caption-tool ./downloads ./training_data zxc subject
  caption-tool ./training_data ./training_data zxc style
  caption-tool ./downloads ./training_data zxc
        """
    )

    parser.add_argument('input_folder', help='Folder containing .png/.jpg images')
    parser.add_argument('output_folder', help='Folder receiving the .txt captions')
    parser.add_argument('word', help='Trigger word')
    parser.add_argument('role', nargs='?', metavar='type', choices=[r.value for r in SemanticRole],
                        help='subject or style; omit for caption-and-prepend mode')

    parser.add_argument('--log-dir', type=str, default=None, help='Directory for log files')
    parser.add_argument('--log-level', type=str, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Console logging level')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug mode with verbose logging')
    parser.add_argument('--pacing-seconds', type=float, default=None,
                        help='Delay after each refined image (default: 60)')
    parser.add_argument('--max-retries', type=int, default=None,
                        help='Retries after a rate-limited refinement request (default: 5)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Timeout of each backend call in seconds (default: 300)')
    parser.add_argument('--model', type=str, default=None, help='OpenAI model used for refinement')
    parser.add_argument('--gradio-url', type=str, default=None, help='Captioning backend URL')
    parser.add_argument('--api-name', type=str, default=None, help='Captioning endpoint name')
    parser.add_argument('--no-progress', action='store_true', help='Hide the progress bar')
    return parser


def apply_arguments(config: CaptionConfig, args: argparse.Namespace) -> CaptionConfig:
    """Return ``config`` with the command-line overrides applied."""
    overrides = {
        'log_level': getattr(logging, args.log_level),
        'debug_mode': args.debug,
        'show_progress': not args.no_progress,
    }
    optional = {
        'log_dir': args.log_dir,
        'pacing_seconds': args.pacing_seconds,
        'max_rate_limit_retries': args.max_retries,
        'request_timeout': args.timeout,
        'model': args.model,
        'gradio_url': args.gradio_url,
        'api_name': args.api_name,
    }
    overrides.update({key: value for key, value in optional.items() if value is not None})
    if args.debug:
        overrides['log_level'] = logging.DEBUG
    return replace(config, **overrides)


def main(argv=None) -> int:
    """
    Main entry point of the caption tool.

    Returns:
        Process exit status.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    mode = select_mode(args.input_folder, args.output_folder, args.role)
    role = SemanticRole(args.role) if args.role else None

    if mode is ProcessingMode.CAPTION_PREPEND and not os.path.exists(args.input_folder):
        print_error(f"Input folder does not exist: {args.input_folder}")
        return 1

    load_dotenv()
    config = apply_arguments(load_config(), args)

    try:
        extractor = CaptionExtractor(config, mode)
    except ValueError as e:
        print_error(str(e))
        return 1

    print_header("🚀 Starting Caption Run", Fore.GREEN)
    print_info("Mode", mode.value, Fore.CYAN)
    print_info("Trigger word", args.word, Fore.CYAN)
    if role is not None:
        print_info("Type", role.value, Fore.CYAN)
    if mode.needs_captioning:
        print_info("Gradio URL", config.gradio_url, Fore.CYAN)
    if mode.needs_refinement:
        print_info("Model", config.model, Fore.CYAN)

    previous_handlers = extractor.install_signal_handlers()
    try:
        results = extractor.extract_captions(args.input_folder, args.output_folder, args.word, role)
    finally:
        extractor.restore_signal_handlers(previous_handlers)
        extractor.close()

    if results['status'] == 'error':
        print_error("Could not read the input folder. See the log for details.")
        return 1

    print_stats(results)
    if results['status'] == 'interrupted':
        print_warning("Processing was interrupted")
    else:
        print_success("Caption run completed")
    return 0


if __name__ == '__main__':
    sys.exit(main())
