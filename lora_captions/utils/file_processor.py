import os
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from colorama import Fore, Style
from tqdm import tqdm

from ..modes import ProcessingMode, SemanticRole

# Suffix match only, case-sensitive
IMAGE_EXTENSIONS = ('.png', '.jpg')

PROCESSED = 'processed'
SKIPPED = 'skipped'
FAILED = 'failed'


class FileProcessor:
    """
    Sequential caption processor for one folder of images.

    Each image is handled to completion before the next one starts, and its
    ``<stem>.txt`` artifact is the only record of progress: an image whose
    artifact already exists is skipped, so an interrupted run can simply be
    started again with the same arguments.

    Three modes are supported:

    - refine-only: rewrite existing artifacts in place with the refinement client.
    - caption-and-refine: caption each image, refine the caption, write the artifact.
    - caption-prepend: caption each image, prefix the trigger word, copy the image
      next to the artifact.

    A fixed pacing delay follows every file for which the refinement backend was
    called, so that batches stay under the backend's rate limits.
    """

    def __init__(self,
                 error_handler,
                 caption_client=None,
                 refine_client=None,
                 pacing_seconds: float = 60,
                 show_progress: bool = True,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the file processor.

        Args:
            error_handler: Logging and error tracking for the run.
            caption_client: Client with ``caption(image_bytes, file_name)``.
            refine_client: Client with ``refine(trigger_word, caption, role)``.
            pacing_seconds: Delay after each file that called the refinement backend.
            show_progress: Display a tqdm progress bar.
            sleep: Function used for the pacing delay.
        """
        self.error_handler = error_handler
        self.logger = error_handler.logger
        self.caption_client = caption_client
        self.refine_client = refine_client
        self.pacing_seconds = pacing_seconds
        self.show_progress = show_progress
        self._sleep = sleep

        self.interrupted = False
        self._refinement_attempted = False
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.stats = {
            'total_found': 0,
            'total_processed': 0,
            'total_skipped': 0,
            'total_errors': 0,
            'start_time': None,
            'end_time': None
        }

    def find_images(self, input_dir: str) -> List[str]:
        """
        List the image files of ``input_dir`` in directory order.

        Raises:
            OSError: If the directory cannot be listed.
        """
        entries = os.listdir(input_dir)
        self.logger.info(f"Found {len(entries)} files in folder {input_dir}")

        images = [
            name for name in entries
            if name.endswith(IMAGE_EXTENSIONS) and os.path.isfile(os.path.join(input_dir, name))
        ]
        self.logger.info(f"Filtered {len(images)} image files")
        return images

    def process_all(self,
                    input_dir: str,
                    output_dir: str,
                    trigger_word: str,
                    role: Optional[SemanticRole],
                    mode: ProcessingMode) -> Dict[str, Any]:
        """
        Process every image of ``input_dir`` according to ``mode``.

        A failure on one image is logged and the batch moves on. A failure to
        list the input directory ends the run; it is logged and reported through
        the returned status instead of being raised.

        Args:
            input_dir: Folder containing the images.
            output_dir: Folder receiving the ``.txt`` artifacts.
            trigger_word: Token injected into every caption.
            role: Semantic role of the trigger word; unused by caption-prepend.
            mode: Processing mode for the run.

        Returns:
            Dict with the run status and processing statistics.
        """
        mode = ProcessingMode(mode)
        role = SemanticRole(role) if role is not None else None
        if mode.needs_refinement and role is None:
            raise ValueError(f"Mode '{mode.value}' requires a semantic role")

        self._reset_stats()
        self.stats['start_time'] = time.time()
        self.error_handler.step(f"Processing {input_dir} -> {output_dir} in {mode.value} mode")

        try:
            images = self.find_images(input_dir)
            if not os.path.isdir(output_dir):
                os.makedirs(output_dir, exist_ok=True)
                self.logger.info(f"Created output folder: {output_dir}")
        except Exception as e:
            self.error_handler.handle_error(e, {
                'operation': 'process_all',
                'input_dir': input_dir,
                'output_dir': output_dir,
                'mode': mode.value
            }, 'file')
            self.stats['end_time'] = time.time()
            return self._get_final_stats('error')

        self.stats['total_found'] = len(images)

        handlers = {
            ProcessingMode.REFINE_ONLY: self._refine_existing,
            ProcessingMode.CAPTION_AND_REFINE: self._caption_and_refine,
            ProcessingMode.CAPTION_PREPEND: self._caption_and_prepend,
        }
        handler = handlers[mode]

        with tqdm(total=len(images), desc=f"{Fore.CYAN}🔄 Captioning{Style.RESET_ALL}", unit="img",
                  disable=not self.show_progress) as pbar:
            for image_name in images:
                if self.interrupted:
                    self.logger.warning(f"{Fore.YELLOW}⚠️ Processing interrupted before {image_name}{Style.RESET_ALL}")
                    break

                pbar.set_description(f"{Fore.CYAN}🔄 {image_name[:20]}{Style.RESET_ALL}")
                image_path = os.path.join(input_dir, image_name)
                artifact_path = os.path.join(output_dir, f"{Path(image_name).stem}.txt")

                self._refinement_attempted = False
                try:
                    outcome = handler(image_name, image_path, artifact_path, output_dir, trigger_word, role)
                except Exception as e:
                    outcome = FAILED
                    pbar.clear()
                    self.error_handler.handle_file_error(e, image_path, 'process')
                    pbar.refresh()

                if outcome == PROCESSED:
                    self.stats['total_processed'] += 1
                elif outcome == SKIPPED:
                    self.stats['total_skipped'] += 1
                else:
                    self.stats['total_errors'] += 1
                pbar.update(1)

                if self._refinement_attempted:
                    self._cooldown()

        self.stats['end_time'] = time.time()
        if self.interrupted:
            return self._get_final_stats('interrupted')

        self.error_handler.success("All images processed.")
        return self._get_final_stats('completed')

    def _refine_existing(self, image_name, image_path, artifact_path, output_dir, trigger_word, role) -> str:
        if not os.path.exists(artifact_path):
            self.logger.info(f"Text file for {image_name} does not exist, skipping.")
            return SKIPPED

        existing_text = Path(artifact_path).read_text(encoding='utf-8')
        refined_text = self._refine(image_name, trigger_word, existing_text, role)
        if refined_text is None:
            self.logger.warning(f"File not refined for {image_name}. Keeping existing caption.")
            return FAILED

        self._write_artifact(artifact_path, refined_text)
        self.logger.info(f"Updated refined caption for {image_name} in {artifact_path}")
        return PROCESSED

    def _caption_and_refine(self, image_name, image_path, artifact_path, output_dir, trigger_word, role) -> str:
        if os.path.exists(artifact_path):
            self.logger.info(f"Text file already exists for {image_name}, skipping.")
            return SKIPPED

        caption = self._caption(image_name, image_path)
        if caption is None:
            self.logger.warning(f"Failed to caption image: {image_name}. Skipping.")
            return FAILED

        refined_text = self._refine(image_name, trigger_word, caption, role)
        if refined_text is None:
            self.logger.warning(f"Caption for {image_name} was not refined. No text file written.")
            return FAILED

        self._write_artifact(artifact_path, refined_text)
        self.logger.info(f"Saved refined caption for {image_name} to {artifact_path}")
        return PROCESSED

    def _caption_and_prepend(self, image_name, image_path, artifact_path, output_dir, trigger_word, role) -> str:
        if os.path.exists(artifact_path):
            self.logger.info(f"Text file already exists for {image_name}, skipping.")
            return SKIPPED

        caption = self._caption(image_name, image_path)
        if caption is None:
            self.logger.warning(f"Failed to caption image: {image_name}. Skipping.")
            return FAILED

        destination = os.path.join(output_dir, image_name)
        if os.path.abspath(destination) != os.path.abspath(image_path):
            shutil.copyfile(image_path, destination)
            self.logger.debug(f"Copied {image_name} to {destination}")

        # The artifact is written last: it marks the image as done
        self._write_artifact(artifact_path, f"{trigger_word} {caption}")
        self.logger.info(f"Saved caption for {image_name} to {artifact_path}")
        return PROCESSED

    def _caption(self, image_name: str, image_path: str) -> Optional[str]:
        if self.caption_client is None:
            raise ValueError("No captioning client configured")
        image_bytes = Path(image_path).read_bytes()
        self.logger.debug(f"Read {len(image_bytes)} bytes from {image_path}")
        return self.caption_client.caption(image_bytes, image_name)

    def _refine(self, image_name: str, trigger_word: str, caption: str, role: SemanticRole) -> Optional[str]:
        if self.refine_client is None:
            raise ValueError("No refinement client configured")
        self._refinement_attempted = True
        self.logger.debug(f"Refining caption for {image_name}")
        return self.refine_client.refine(trigger_word, caption, role)

    @staticmethod
    def _write_artifact(artifact_path: str, text: str) -> None:
        # Replace in one step so a killed run never leaves a partial artifact
        tmp_path = f"{artifact_path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_path, artifact_path)

    def _cooldown(self) -> None:
        """
        Wait for the pacing interval between files.
        """
        if self.pacing_seconds <= 0:
            return

        self.logger.info(f"Pacing for {self.pacing_seconds} seconds before the next file...")

        # Interruptible sleep
        remaining = self.pacing_seconds
        while remaining > 0 and not self.interrupted:
            chunk = min(1, remaining)
            self._sleep(chunk)
            remaining -= chunk

    def interrupt(self) -> None:
        """
        Signal the processor to stop at the next file boundary.
        """
        self.interrupted = True
        self.logger.info("Interrupt signal received")

    def _get_final_stats(self, status: str) -> Dict[str, Any]:
        if self.stats['start_time'] and self.stats['end_time']:
            total_time = self.stats['end_time'] - self.stats['start_time']
        else:
            total_time = 0

        return {
            'status': status,
            'total_images': self.stats['total_found'],
            'total_processed': self.stats['total_processed'],
            'total_skipped': self.stats['total_skipped'],
            'total_errors': self.stats['total_errors'],
            'total_time_seconds': round(total_time, 2),
            'success_rate': round((self.stats['total_processed'] / max(self.stats['total_found'], 1)) * 100, 2),
            'interrupted': self.interrupted
        }

    def get_processing_summary(self, stats: Dict[str, Any]) -> str:
        """
        Human-readable summary of a ``process_all`` result.
        """
        return f"""
=== Processing Summary ===
Status: {stats['status']}
Images found: {stats['total_images']}
Images processed: {stats['total_processed']}
Images skipped: {stats['total_skipped']}
Errors: {stats['total_errors']}
Total time: {stats['total_time_seconds']:.2f} seconds
Success rate: {stats['success_rate']:.1f}%
Interrupted: {stats['interrupted']}
=========================="""
