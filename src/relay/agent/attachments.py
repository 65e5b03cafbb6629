"""Turning ``--attach`` file paths into prompt text and binary message parts."""

import logging
import mimetypes
import os
from typing import (
    List,
    Sequence,
    Tuple,
)

from relay.core.schema import FilePart

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "text/plain"

_TEXT_APPLICATION_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/javascript",
        "application/typescript",
        "application/x-yaml",
        "application/yaml",
        "application/toml",
        "application/x-sh",
        "application/x-shellscript",
    }
)


def detect_media_type(path: str) -> str:
    """Media type from the file extension, ``text/plain`` when unknown."""
    media_type, _ = mimetypes.guess_type(path)
    return media_type or DEFAULT_MEDIA_TYPE


def is_text_media_type(media_type: str) -> bool:
    """True for ``text/*`` and the structured-text application types; parameters are ignored."""
    base = media_type.split(";", 1)[0].strip().lower()
    return base.startswith("text/") or base in _TEXT_APPLICATION_TYPES


def prepare_attachments(prompt: str, paths: Sequence[str]) -> Tuple[str, List[FilePart]]:
    """
    Fold attachments into a prompt.

    Text files are inlined as ``<file path="name">`` blocks ahead of the prompt; anything else
    becomes a :class:`FilePart`.  A file that cannot be read leaves an error note at the end of
    the prompt instead of failing the turn.
    """
    inlined: List[str] = []
    files: List[FilePart] = []
    for path in paths:
        try:
            with open(path, "rb") as fh:
                data = fh.read()
        except OSError as exc:
            logger.debug("Could not read attachment %s: %s", path, exc)
            prompt += f"\n\n[Error reading {path}: {exc}]"
            continue

        name = os.path.basename(path)
        media_type = detect_media_type(path)
        if is_text_media_type(media_type):
            text = data.decode("utf-8", errors="replace")
            inlined.append(f'<file path="{name}">\n{text}\n</file>')
        else:
            files.append(FilePart(filename=name, media_type=media_type, data=data))

    if inlined:
        prompt = "\n\n".join(inlined) + "\n\n" + prompt
    return prompt, files
