"""Media kind detection for inbound payloads handled by welcome_ai nodes."""
from __future__ import annotations

from enum import Enum


class MediaKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    PAYMENT_PROOF = "payment_proof"
    DOCUMENT = "document"


AUDIO_EXTENSIONS = (".ogg", ".oga", ".opus", ".mp3", ".m4a", ".wav")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
DOCUMENT_EXTENSIONS = (".pdf", ".doc", ".docx")


def detect_media_type(payload: str) -> MediaKind:
    """
    Classify a payload by channel markers ([AUDIO], [IMAGE], ...) or by
    the extension of the media reference. Checked in priority order:
    audio, payment proof, image, document.
    """
    text = (payload or "").strip()
    lowered = text.lower()

    if "[AUDIO]" in text or lowered.endswith(AUDIO_EXTENSIONS):
        return MediaKind.AUDIO
    if "[COMPROVANTE]" in text or "comprovante" in lowered or "pix" in lowered:
        return MediaKind.PAYMENT_PROOF
    if "[IMAGE]" in text or lowered.endswith(IMAGE_EXTENSIONS):
        return MediaKind.IMAGE
    if "[DOCUMENT]" in text or lowered.endswith(DOCUMENT_EXTENSIONS):
        return MediaKind.DOCUMENT
    return MediaKind.TEXT
