"""Count the pages of a document before it is sent to Textract."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import boto3
import fitz  # type: ignore
from botocore.config import Config
from botocore.exceptions import ClientError

from .contracts import Manifest
from .errors import ManifestError, client_error_code

LOGGER = logging.getLogger(__name__)

_SINGLE_PAGE_EXTENSIONS = {".png", ".jpg", ".jpeg"}
_MULTI_PAGE_FILETYPES = {".pdf": "pdf", ".tif": "tiff", ".tiff": "tiff"}


class S3PageCounter:
    """Reads the source object from S3 and counts its pages with PyMuPDF."""

    def __init__(self, s3_client: Optional[Any] = None, region: Optional[str] = None) -> None:
        self._s3_client = s3_client or boto3.client(
            "s3",
            region_name=region,
            config=Config(retries={"max_attempts": 5, "mode": "adaptive"}),
        )

    def count(self, manifest: Manifest) -> Optional[int]:
        if manifest.number_of_pages:
            return manifest.number_of_pages

        try:
            bucket, key = manifest.bucket_and_key()
        except ManifestError:
            return None

        extension = os.path.splitext(key)[1].lower()
        if extension in _SINGLE_PAGE_EXTENSIONS:
            return 1
        filetype = _MULTI_PAGE_FILETYPES.get(extension)
        if filetype is None:
            LOGGER.debug("Cannot count pages for unsupported extension '%s'", extension)
            return None

        try:
            response = self._s3_client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            LOGGER.warning("Unable to download %s for page counting (%s)", manifest.s3_path, client_error_code(exc))
            return None

        body = response["Body"]
        try:
            payload = body.read()
        finally:
            body.close()

        document = fitz.open(stream=payload, filetype=filetype)
        try:
            return document.page_count
        finally:
            document.close()


__all__ = ["S3PageCounter"]
