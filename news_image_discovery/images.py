##########################################################################################
#
# Script name: images.py
#
# Description: Downloads discovered images into the region-aware directory layout.
#
##########################################################################################

import logging
from dataclasses import replace
from pathlib import Path

import requests
from filetype import guess

from .errors import DeadlineExceeded
from .models import DedupedImage
from .ratelimit import HostRateLimiter
from .utils import slugify


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
MIN_IMAGE_BYTES = 512
ALLOWED_IMAGE_TYPES = {'png', 'jpg', 'gif', 'webp', 'bmp', 'tiff', 'avif'}


# ****************************************************************************************
# Functions
# ****************************************************************************************


def detect_image_format(data: bytes) -> str | None:
    kind = guess(data)
    if kind and kind.mime.startswith('image/'):
        ext = kind.extension.lower()
        return 'jpg' if ext == 'jpeg' else ext
    return None


def infer_image_extension(content_type: str | None, data: bytes) -> str | None:
    detected = detect_image_format(data)
    if detected:
        return detected
    if not content_type:
        return None
    parts = content_type.split(';')[0].split('/')
    if len(parts) == 2 and parts[0].strip().lower() == 'image':
        ext = parts[1].strip().lower()
        return 'jpg' if ext == 'jpeg' else ext
    return None


def image_path(root: Path, region_id: str, article_key: str, index: int, extension: str) -> Path:
    region_dir = slugify(region_id, fallback='unclassified')
    return root / 'images' / region_dir / f'{article_key}-{index}.{extension}'


def download_images(
    images: list[DedupedImage],
    root: Path,
    region_id: str,
    article_key: str,
    session: requests.Session,
    rate_limiter: HostRateLimiter | None = None,
    timeout: float = 15.0,
    deadline_at: float | None = None,
) -> list[DedupedImage]:
    '''
    Store image bytes as images/<region>/<article>-<index>.<ext>.

    Returns the images in the same order, with local_path set for every image
    that was written. Failures are logged and leave local_path unset.
    '''
    stored: list[DedupedImage] = []
    for index, image in enumerate(images, start=1):
        url = image.source_url or image.canonical_url
        if rate_limiter is not None:
            try:
                rate_limiter.acquire(url, deadline_at=deadline_at)
            except DeadlineExceeded:
                log.warning('Deadline reached; leaving %d image(s) undownloaded', len(images) - index + 1)
                stored.extend(images[index - 1:])
                break
        try:
            resp = session.get(url, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            log.warning('Failed to fetch image %s: %s', url, exc)
            stored.append(image)
            continue

        data = resp.content or b''
        content_type = resp.headers.get('Content-Type', '')
        if len(data) < MIN_IMAGE_BYTES or len(data) > MAX_IMAGE_BYTES:
            log.warning('Skipping %s: unexpected size of %d bytes', url, len(data))
            stored.append(image)
            continue
        extension = infer_image_extension(content_type, data)
        if not extension or extension not in ALLOWED_IMAGE_TYPES:
            log.warning('Skipping %s: unsupported image type (Content-Type=%s)', url, content_type)
            stored.append(image)
            continue

        destination = image_path(root, region_id, article_key, index, extension)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(data)
        except OSError as exc:
            log.warning('Failed to write image %s: %s', destination, exc)
            stored.append(image)
            continue
        log.debug('Saved image %s (%d bytes)', destination, len(data))
        stored.append(replace(image, local_path=str(destination.relative_to(root))))
    return stored
