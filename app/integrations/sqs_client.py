# app/integrations/sqs_client.py
import json
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from core.config import settings
from core.logger import logger

PERMANENT_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
    "AccessDenied",
    "AccessDeniedException",
    "InvalidParameterValue",
    "InvalidMessageContents",
    "InvalidClientTokenId",
    "UnsupportedOperation",
}


class PublishError(Exception):
    """Publish rejected; retrying the same message will not help."""

    transient = False


class TransientPublishError(PublishError):
    """Timeouts, throttling, 5xx; safe to retry with backoff."""

    transient = True


def _classify(error: Exception) -> PublishError:
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        http_status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
        message = f"SQS send failed: {code or http_status}"
        if code in PERMANENT_CODES:
            return PublishError(message)
        if http_status >= 500 or "Throttl" in code:
            return TransientPublishError(message)
        if 400 <= http_status < 500:
            return PublishError(message)
        return TransientPublishError(message)
    if isinstance(error, NoCredentialsError):
        return PublishError(f"SQS send failed: {error}")
    return TransientPublishError(f"SQS send failed: {error}")


class QueuePublisher:
    """Thin wrapper over SQS SendMessage for JSON envelopes."""

    def __init__(self, sqs_client=None, queue_url: Optional[str] = None, fifo: Optional[bool] = None):
        self._sqs = sqs_client
        self.queue_url = queue_url or settings.SQS_QUEUE_URL
        self.fifo = settings.SQS_FIFO if fifo is None else fifo

    @property
    def sqs(self):
        if self._sqs is None:
            from core.aws_client import get_sqs_client
            self._sqs = get_sqs_client()
        return self._sqs

    def publish_json(
        self,
        envelope: Dict[str, Any],
        *,
        dedupe_id: str,
        group_id: Optional[str] = None,
        attributes: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Publish a JSON message to SQS.
        Assumes body <= 256KB; jobs carry references, never payload bytes.
        """
        body = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)
        message_attributes = {
            "content_type": {"DataType": "String", "StringValue": "application/json"},
        }
        for name, value in (attributes or {}).items():
            if value:
                message_attributes[name] = {"DataType": "String", "StringValue": str(value)}

        params = {
            "QueueUrl": self.queue_url,
            "MessageBody": body,
            "MessageAttributes": message_attributes,
        }
        if self.fifo:
            params["MessageGroupId"] = group_id or dedupe_id
            params["MessageDeduplicationId"] = dedupe_id

        logger.debug(f"SQS publish to {self.queue_url}, body size {len(body)} bytes")

        try:
            resp = self.sqs.send_message(**params)
        except (ClientError, BotoCoreError) as e:
            raise _classify(e) from e

        msg_id = resp.get("MessageId", "")
        logger.info("SQS publish ok job_id=%s msg_id=%s", dedupe_id, msg_id)
        return msg_id

    def check_queue(self) -> None:
        self.sqs.get_queue_attributes(QueueUrl=self.queue_url, AttributeNames=["QueueArn"])
