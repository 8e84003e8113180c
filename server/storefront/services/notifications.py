"""
Order lifecycle events.

Publishing is best-effort: the order is already committed when an event is
sent, so delivery failures are logged for follow-up and never raised.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import boto3

from ..settings import Settings

logger = logging.getLogger(__name__)


def build_order_created_event(
    order_id: int,
    user_id: int,
    user_name: Optional[str],
    user_location: Optional[str],
    total_price: Any,
    order_status: str,
) -> Dict[str, Any]:
    return {
        "orderId": order_id,
        "userId": user_id,
        "userName": user_name,
        "userLocation": user_location,
        "totalPrice": float(total_price),
        "orderStatus": order_status,
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "eventType": "ORDER_CREATED",
        "version": "1.0",
    }


class OrderEventPublisher(ABC):
    @abstractmethod
    async def publish_order_created(self, event: Dict[str, Any]) -> None:
        ...


class SnsOrderEventPublisher(OrderEventPublisher):
    """Publishes order events to an SNS topic."""

    def __init__(self, topic_arn: str, client=None, region_name: Optional[str] = None):
        self.topic_arn = topic_arn
        self._client = client or boto3.client("sns", region_name=region_name)

    def _publish(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return self._client.publish(
            TopicArn=self.topic_arn,
            Message=json.dumps(event),
            Subject="New Order Created",
            MessageAttributes={
                "eventType": {"DataType": "String", "StringValue": event["eventType"]},
                "orderId": {"DataType": "Number", "StringValue": str(event["orderId"])},
            },
        )

    async def publish_order_created(self, event: Dict[str, Any]) -> None:
        # boto3 is blocking; keep it off the event loop
        result = await asyncio.to_thread(self._publish, event)
        logger.info(
            f"Order created event published: message_id={result.get('MessageId')} "
            f"order_id={event['orderId']} topic={self.topic_arn}"
        )


def build_publisher(settings: Settings) -> Optional[OrderEventPublisher]:
    if not settings.order_created_topic_arn:
        logger.info("No order-created topic configured; order events disabled")
        return None
    return SnsOrderEventPublisher(settings.order_created_topic_arn, region_name=settings.aws_region)
