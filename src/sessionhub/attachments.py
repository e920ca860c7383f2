"""Upload inline images from user messages and replace them with references."""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Protocol

from sessionhub.models import AttachmentRecord, UploadResult

logger = logging.getLogger("sessionhub.attachments")


class AttachmentUploader(Protocol):
    def upload_attachment(
        self,
        session_id: str,
        interaction_index: int,
        base64_data: str,
        media_type: str,
        filename: str | None = None,
    ) -> UploadResult: ...


def is_inline_image(item: Any) -> bool:
    """True for a base64 image content item with data and media type."""
    if not isinstance(item, dict) or item.get("type") != "image":
        return False
    source = item.get("source")
    return (
        isinstance(source, dict)
        and source.get("type") == "base64"
        and bool(source.get("data"))
        and bool(source.get("media_type"))
    )


def image_references(content: list[Any]) -> list[int]:
    """Attachment indices referenced by rewritten content items."""
    return [
        item["attachment_index"]
        for item in content
        if isinstance(item, dict) and item.get("type") == "image_ref"
    ]


class AttachmentExtractor:
    """Uploads inline images one at a time, in encounter order.

    Sequential uploads keep reference indices deterministic: the indices are
    embedded in interaction content and must line up with the attachment list.
    """

    def __init__(self, uploader: AttachmentUploader):
        self.uploader = uploader
        self.failures = 0

    def process(
        self,
        content: list[Any],
        session_id: str,
        interaction_index: int,
        attachments: list[AttachmentRecord],
    ) -> int:
        """Upload every inline image in ``content`` and rewrite it in place.

        Successful uploads append to ``attachments`` and become
        ``{"type": "image_ref", "attachment_index": n}``. A failed upload is
        logged and its item left untouched.

        Returns:
            Number of images uploaded.
        """
        positions = [i for i, item in enumerate(content) if is_inline_image(item)]
        if not positions:
            return 0

        logger.info("Found %d image(s) in user message, uploading", len(positions))
        next_index = len(attachments)
        uploaded = 0

        for n, position in enumerate(positions, 1):
            source = content[position]["source"]
            data = source["data"]
            media_type = source["media_type"]

            try:
                result = self.uploader.upload_attachment(
                    session_id, interaction_index, data, media_type
                )
            except Exception as e:
                self.failures += 1
                logger.error("Exception uploading image %d/%d: %s", n, len(positions), e)
                continue

            if not (result.success and result.storage_path and result.public_url):
                self.failures += 1
                logger.warning("Failed to upload image %d/%d: %s", n, len(positions), result.error)
                continue

            attachments.append(
                AttachmentRecord(
                    interaction_index=interaction_index,
                    type="image",
                    storage_location=result.storage_path,
                    public_url=result.public_url,
                    media_type=media_type,
                    filename=result.storage_path.rsplit("/", 1)[-1] or "image",
                    # Decoded size estimated from the base64 length
                    size_bytes=math.ceil(len(data) * 0.75),
                    uploaded_at=datetime.now(tz=timezone.utc).isoformat(),
                )
            )
            content[position] = {"type": "image_ref", "attachment_index": next_index}
            next_index += 1
            uploaded += 1
            logger.info("Image %d/%d uploaded: %s", n, len(positions), result.storage_path)

        return uploaded
