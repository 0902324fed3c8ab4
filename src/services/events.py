"""Event publishing service for port pool changes."""

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from src.core.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class EventType(Enum):
    """Port allocation event types."""
    PORT_CREATED = "ports.port.created"
    PORT_DELETED = "ports.port.deleted"
    PORT_STATUS_CHANGED = "ports.port.status_changed"
    PORT_ASSIGNED = "ports.allocation.assigned"
    PORT_RELEASED = "ports.allocation.released"
    PORT_REASSIGNED = "ports.allocation.reassigned"
    SUBSCRIPTION_PENDING_ALLOCATION = "ports.subscription.pending_allocation"


@dataclass
class PortEvent:
    """Base port event structure."""
    event_type: EventType
    resource_id: str
    resource_type: str
    data: Dict[str, Any]
    user_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    # Auto-generated fields
    event_id: str = None
    timestamp: str = None
    version: str = "1.0"

    def __post_init__(self):
        if self.event_id is None:
            self.event_id = str(uuid.uuid4())
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()


class EventPublisher:
    """Service for publishing port events after their transaction commits."""

    def __init__(self):
        self.event_bus_type = settings.event_bus_type
        self.sqs_client = None
        self.queue_url = settings.sqs_event_queue_url

        if self.event_bus_type == "sqs":
            self._initialize_sqs()

    def _initialize_sqs(self):
        """Initialize SQS client."""
        try:
            self.sqs_client = boto3.client(
                "sqs",
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key,
            )
            logger.info("SQS client initialized for event publishing")
        except Exception as e:
            logger.error(f"Failed to initialize SQS client: {e}")
            self.sqs_client = None

    async def publish_event(self, event: PortEvent) -> bool:
        """Publish a port event. Failures are logged, never raised."""
        try:
            if self.event_bus_type == "sqs":
                return await self._publish_to_sqs(event)
            else:
                # Mock mode for development
                return await self._publish_mock(event)
        except Exception as e:
            logger.error(f"Failed to publish event {event.event_id}: {e}")
            return False

    async def _publish_to_sqs(self, event: PortEvent) -> bool:
        """Publish event to SQS queue."""
        if not self.sqs_client or not self.queue_url:
            logger.warning("SQS not properly configured, skipping event publish")
            return False

        try:
            message_body = json.dumps(asdict(event), default=str)
            message_attributes = {
                "event_type": {
                    "StringValue": event.event_type.value,
                    "DataType": "String"
                },
                "resource_type": {
                    "StringValue": event.resource_type,
                    "DataType": "String"
                }
            }

            response = self.sqs_client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=message_body,
                MessageAttributes=message_attributes,
                MessageGroupId=event.resource_id,  # For FIFO queues
                MessageDeduplicationId=event.event_id
            )

            logger.info(f"Published event {event.event_id} to SQS: {response['MessageId']}")
            return True

        except ClientError as e:
            logger.error(f"SQS error publishing event {event.event_id}: {e}")
            return False

    async def _publish_mock(self, event: PortEvent) -> bool:
        """Mock event publishing for development."""
        logger.info(f"MOCK EVENT: {event.event_type.value} - {event.event_id}")
        logger.debug(f"Event data: {json.dumps(asdict(event), indent=2, default=str)}")
        return True

    async def publish_port_event(
        self,
        event_type: EventType,
        port_id: Any,
        data: Dict[str, Any],
        user_id: Optional[Any] = None,
    ) -> bool:
        """Publish an event about a single port."""
        event = PortEvent(
            event_type=event_type,
            resource_id=str(port_id),
            resource_type="port",
            data=data,
            user_id=str(user_id) if user_id else None,
            metadata={
                "source": "port_allocation_service",
                "api_version": "v1"
            }
        )
        return await self.publish_event(event)

    async def publish_pending_allocation(self, subscription_id: Any, customer_id: Any = None) -> bool:
        """Notify administrators that a subscription is waiting for a port."""
        logger.warning(f"ADMIN NOTIFICATION: No available ports for subscription {subscription_id}")
        event = PortEvent(
            event_type=EventType.SUBSCRIPTION_PENDING_ALLOCATION,
            resource_id=str(subscription_id),
            resource_type="subscription",
            data={
                "subscription_id": str(subscription_id),
                "customer_id": str(customer_id) if customer_id else None,
            },
            metadata={
                "source": "port_allocation_service",
                "api_version": "v1",
                "notify": "admin"
            }
        )
        return await self.publish_event(event)


# Global event publisher instance
_event_publisher = None


def get_event_publisher() -> EventPublisher:
    """Get the global event publisher instance."""
    global _event_publisher
    if _event_publisher is None:
        _event_publisher = EventPublisher()
    return _event_publisher
