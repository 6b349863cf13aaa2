"""
Image tag versioning.

Tags have the form ``<major>.<minor>``. Each build takes the most recently
pushed tag of the repository and increments its last numeric component.
"""

import re
from datetime import datetime
from typing import Any, Iterable

from stratus.pipeline.errors import VersionTagParseFailure

SEED_TAG = "1.0"
"""Tag used for the first build of a repository with no tagged images"""

_NUMBER = re.compile(r"[0-9]+")


def next_image_tag(current: str | None) -> str:
    """
    Compute the tag that follows ``current``.

    Examples:
        next_image_tag("1.7")  # "1.8"
        next_image_tag("2.0")  # "2.1"
        next_image_tag("1.9")  # "1.10"
        next_image_tag(None)   # "1.0"

    Raises:
        VersionTagParseFailure: If the tag has no numeric suffix after its last dot
    """
    # "None" is what the registry CLI prints for a repository without tags
    if current is None or current in ("", "None"):
        return SEED_TAG

    prefix, dot, suffix = current.rpartition(".")
    if not _NUMBER.fullmatch(suffix):
        raise VersionTagParseFailure(current)

    next_number = int(suffix) + 1
    return f"{prefix}{dot}{next_number}"


def latest_tag(images: Iterable[dict[str, Any]]) -> str | None:
    """
    Pick the first tag of the most recently pushed tagged image.

    ``images`` are registry image descriptions with ``imageTags`` and
    ``imagePushedAt`` keys (the shape of ECR ``describe_images``).
    Untagged images are ignored.
    """
    tagged = [image for image in images if image.get("imageTags")]
    if not tagged:
        return None

    def pushed_at(image: dict[str, Any]) -> float:
        value = image.get("imagePushedAt")
        if isinstance(value, datetime):
            return value.timestamp()
        return float(value or 0)

    newest = max(tagged, key=pushed_at)
    return newest["imageTags"][0]
