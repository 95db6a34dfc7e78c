"""Image attachments: read uploads and base64-encode the image ones."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from typing import Protocol

from ..types import AttachmentError

logger = logging.getLogger(__name__)


class Upload(Protocol):
    """The parts of ``starlette.datastructures.UploadFile`` used here."""
    filename: str | None
    content_type: str | None

    async def read(self, size: int = -1) -> bytes: ...


async def encode_images(
    uploads: Sequence[Upload],
    *,
    max_file_size: int,
    label: str = "",
) -> list[str]:
    """Return base64 strings for every non-empty image upload.

    Empty uploads (blank file inputs) are ignored and non-image uploads are
    skipped. If any non-empty file was attached but none was an image the
    whole attachment set is rejected rather than silently dropped.
    """
    images: list[str] = []
    attached = 0
    for upload in uploads:
        name = upload.filename or "<unnamed>"
        try:
            data = await upload.read()
        except OSError as e:
            logger.error("[Session: %s] Error reading uploaded file %s: %s", label, name, e)
            raise AttachmentError(f"Failed to read uploaded file: {name}") from e
        if not data:
            continue
        attached += 1
        if len(data) > max_file_size:
            raise AttachmentError(
                f"Uploaded file {name} exceeds the {max_file_size} byte limit"
            )
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            logger.warning("[Session: %s] Skipping non-image file: %s (%s)", label, name, content_type)
            continue
        images.append(base64.b64encode(data).decode("ascii"))

    if attached and not images:
        raise AttachmentError("Uploaded files were not valid images.")
    if images:
        logger.info("[Session: %s] Processed %d image(s) to base64.", label, len(images))
    return images


def annotate_prompt(prompt: str, image_count: int) -> str:
    """History form of a prompt: images are stored only as a count marker."""
    if image_count <= 0:
        return prompt
    suffix = "image" if image_count == 1 else "images"
    return f"{prompt} (+ {image_count} {suffix})"
