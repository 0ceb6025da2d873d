"""
AWS SQS helpers for the order event feed. Used when event_backend is "sqs".
"""
import asyncio
import json
from typing import Any

import boto3

from orderflow.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region, endpoint_url=settings.sqs_endpoint_url)
    return _sqs_client


async def send_message(body: dict, group_id: str | None = None) -> None:
    """Send message to the event queue (run boto3 in thread to not block).
    group_id keeps per-order ordering on FIFO queues."""
    if not settings.sqs_queue_url:
        raise RuntimeError("event_backend is sqs but sqs_queue_url is not set")
    client = _get_client()
    kwargs: dict[str, Any] = {"QueueUrl": settings.sqs_queue_url, "MessageBody": json.dumps(body)}
    if group_id and settings.sqs_queue_url.endswith(".fifo"):
        kwargs["MessageGroupId"] = group_id
        kwargs["MessageDeduplicationId"] = body["event_id"]
    await asyncio.to_thread(client.send_message, **kwargs)

