"""Thin wrapper around the Textract asynchronous start/get APIs."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import boto3
from botocore.config import Config

from .config import OrchestratorConfig
from .contracts import Manifest, TextractAPI, TextractFeature

LOGGER = logging.getLogger(__name__)

# Textract limits JobTag to 64 characters of [a-zA-Z0-9_.\-:]
_JOB_TAG_MAX_LENGTH = 64


class AsyncJobService(Protocol):
    """External asynchronous job service used by the dispatcher."""

    def start(self, manifest: Manifest, *, job_tag: Optional[str] = None) -> str:
        ...


def _create_textract_client(region: Optional[str]):
    # Throttling is retried by the dispatcher's policy, not by botocore.
    return boto3.client(
        "textract",
        region_name=region,
        config=Config(retries={"max_attempts": 1, "mode": "standard"}),
    )


class TextractJobService(AsyncJobService):
    """Starts Textract jobs that publish their completion on the configured SNS topic."""

    def __init__(self, config: OrchestratorConfig, client: Optional[Any] = None) -> None:
        self._config = config
        self._client = client if client is not None else _create_textract_client(config.region)

    def api_for(self, manifest: Manifest) -> TextractAPI:
        return manifest.textract_api or self._config.textract_api

    def operation_for(self, manifest: Manifest) -> str:
        """Name of the boto3 start operation for a manifest."""

        if self.api_for(manifest) is TextractAPI.EXPENSE:
            return "start_expense_analysis"
        if manifest.textract_features:
            return "start_document_analysis"
        return "start_document_text_detection"

    def build_request(self, manifest: Manifest, *, job_tag: Optional[str] = None) -> Dict[str, Any]:
        bucket, key = manifest.bucket_and_key()
        request: Dict[str, Any] = {
            "DocumentLocation": {"S3Object": {"Bucket": bucket, "Name": key}},
            "OutputConfig": {
                "S3Bucket": self._config.s3_output_bucket,
                "S3Prefix": self._config.s3_temp_output_prefix.strip("/"),
            },
        }
        if self._config.notification_topic_arn and self._config.notification_role_arn:
            request["NotificationChannel"] = {
                "SNSTopicArn": self._config.notification_topic_arn,
                "RoleArn": self._config.notification_role_arn,
            }
        if job_tag:
            request["JobTag"] = _sanitise_job_tag(job_tag)

        if self.operation_for(manifest) == "start_document_analysis":
            request["FeatureTypes"] = [feature.value for feature in manifest.textract_features]
            if TextractFeature.QUERIES in manifest.textract_features:
                request["QueriesConfig"] = {"Queries": [query.to_request() for query in manifest.queries_config]}
        return request

    def start(self, manifest: Manifest, *, job_tag: Optional[str] = None) -> str:
        operation = self.operation_for(manifest)
        request = self.build_request(manifest, job_tag=job_tag)
        LOGGER.debug("Calling textract.%s for %s", operation, manifest.s3_path)
        response = getattr(self._client, operation)(**request)
        return response["JobId"]

    def get_page_count(self, job_id: str, api: Optional[str] = None) -> Optional[int]:
        """Number of pages Textract processed for a finished job."""

        api_name = (api or "").lower()
        if "expense" in api_name:
            response = self._client.get_expense_analysis(JobId=job_id, MaxResults=1)
        elif "text" in api_name:
            response = self._client.get_document_text_detection(JobId=job_id, MaxResults=1)
        else:
            response = self._client.get_document_analysis(JobId=job_id, MaxResults=1)
        pages = (response.get("DocumentMetadata") or {}).get("Pages")
        return int(pages) if pages is not None else None


def _sanitise_job_tag(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "_.-:" else "-" for char in value)
    return cleaned[-_JOB_TAG_MAX_LENGTH:]


__all__ = ["AsyncJobService", "TextractJobService"]
