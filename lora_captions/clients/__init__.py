"""Backend clients used by the caption pipeline.

Available clients:
- GradioCaptionClient: captions an image through a Gradio app (JoyCaption)
- OpenAIClient: rewrites a caption around a trigger word with OpenAI chat models
"""

from .gradio import GradioCaptionClient
from .openai import OpenAIClient

__all__ = [
    'GradioCaptionClient',
    'OpenAIClient',
    'create_client',
]


def create_client(kind: str, **kwargs):
    """
    Factory function to create backend client instances.

    Args:
        kind (str): 'caption' for the Gradio captioning client,
            'refine' for the OpenAI refinement client.
        **kwargs: Constructor arguments of the selected client.

    Returns:
        Configured client instance.
    """
    if kind == 'caption':
        return GradioCaptionClient(**kwargs)
    if kind == 'refine':
        return OpenAIClient(**kwargs)
    raise ValueError(f"Unknown client kind: {kind}")
