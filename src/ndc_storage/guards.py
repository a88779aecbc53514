"""Size limits for inline uploads and downloads."""

from __future__ import annotations

from typing import Iterable

from ndc_storage.errors import UnprocessableContentError

MIB = 1 << 20


def upload_size_error(limit_mb: int) -> UnprocessableContentError:
    return UnprocessableContentError(
        f"file size > {limit_mb} MB is not allowed to be upload directly. "
        "Please use presignedPutObject function for large files"
    )


def download_size_error(limit_mb: int) -> UnprocessableContentError:
    return UnprocessableContentError(
        f"file size > {limit_mb} MB is not allowed to be downloaded directly. "
        "Please use presignedGetObject function for large files"
    )


def check_upload_size(size: int | None, limit_mb: int) -> None:
    if size is not None and size > limit_mb * MIB:
        raise upload_size_error(limit_mb)


def check_download_size(size: int | None, limit_mb: int) -> None:
    if size is not None and size > limit_mb * MIB:
        raise download_size_error(limit_mb)


def read_limited(chunks: Iterable[bytes], limit_mb: int, *, upload: bool = False) -> bytes:
    """Collect a byte stream, failing as soon as it grows past the limit.

    The guard runs while reading, so an object whose advertised size is
    missing or wrong never gets buffered past ``limit_mb``.
    """
    limit = limit_mb * MIB
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise upload_size_error(limit_mb) if upload else download_size_error(limit_mb)
    return bytes(buffer)
