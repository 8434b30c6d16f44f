"""Run-level enums shared by the driver, the processor and the clients."""

from enum import Enum


class ProcessingMode(str, Enum):
    """How the batch processor treats each image in a run."""

    REFINE_ONLY = "refine-only"
    CAPTION_AND_REFINE = "caption-and-refine"
    CAPTION_PREPEND = "caption-prepend"

    @property
    def needs_captioning(self) -> bool:
        return self is not ProcessingMode.REFINE_ONLY

    @property
    def needs_refinement(self) -> bool:
        return self is not ProcessingMode.CAPTION_PREPEND


class SemanticRole(str, Enum):
    """What the trigger word stands for in the refinement prompt."""

    SUBJECT = "subject"
    STYLE = "style"
