"""scan_engine_shared.queues — SQS adapter for work and merge-trigger queues."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    receipt_handle: str
    body: str


class SqsQueue:
    """One SQS queue: send, long-poll receive, acknowledge by delete."""

    def __init__(self, sqs, queue_url: str, *, max_messages: int = 10, wait_seconds: int = 20):
        if sqs is None:
            raise ValueError("sqs client is required")
        if not queue_url or not str(queue_url).strip():
            raise ValueError("SQS queue URL is required")
        self._sqs = sqs
        self.queue_url = queue_url
        self.max_messages = max(1, min(int(max_messages), 10))
        self.wait_seconds = max(0, min(int(wait_seconds), 20))

    def send(self, body: Any) -> str:
        """Send a JSON body (str is sent as-is); returns the SQS MessageId."""
        text = body if isinstance(body, str) else json.dumps(body, default=str)
        resp = self._sqs.send_message(QueueUrl=self.queue_url, MessageBody=text)
        message_id = resp["MessageId"]
        logger.info("SQS message sent. queue=%s messageId=%s", self.queue_url, message_id)
        return message_id

    def receive(self) -> List[QueueMessage]:
        resp = self._sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=self.max_messages,
            WaitTimeSeconds=self.wait_seconds,
        )
        return [
            QueueMessage(
                message_id=raw.get("MessageId", ""),
                receipt_handle=raw.get("ReceiptHandle", ""),
                body=raw.get("Body", ""),
            )
            for raw in resp.get("Messages", [])
        ]

    def delete(self, message: QueueMessage) -> None:
        self._sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message.receipt_handle)
