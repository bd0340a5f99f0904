"""Validation helpers for images attached to chat messages."""

from typing import List, Optional, Sequence

MAX_IMAGES_PER_MESSAGE = 4
MAX_IMAGE_CHARS = 14_000_000  # ~10 MB of binary once base64-encoded


def validate_chat_images(images: Optional[Sequence[str]]) -> List[str]:
    """Return the attached images, raising ValueError if they cannot be accepted.

    Only cheap structural checks happen here; decoding is left to the
    image normalizer so a bad image fails the generation, not the request.
    """
    if not images:
        return []
    if len(images) > MAX_IMAGES_PER_MESSAGE:
        raise ValueError(f"At most {MAX_IMAGES_PER_MESSAGE} images may be attached to a message.")
    accepted = []
    for index, image in enumerate(images):
        if not isinstance(image, str) or not image.strip():
            raise ValueError(f"Image {index + 1} is empty.")
        if len(image) > MAX_IMAGE_CHARS:
            raise ValueError(f"Image {index + 1} is too large.")
        if image.startswith("data:") and ";base64," not in image[:64]:
            raise ValueError(f"Image {index + 1} must be a base64 data URL.")
        accepted.append(image)
    return accepted
