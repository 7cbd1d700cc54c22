"""Service layer exports."""

from .dispatch import DispatchGateway, get_dispatch_gateway
from .messages import insert_message, list_thread_messages, serialize_message, soft_delete_message
from .processor import ProcessorClient, build_processor_payload, get_processor_client, shutdown_processor_client
from .profiles import get_profile, upsert_profile
from .realtime import RealtimeNotifier, Subscription, SubscriptionStatus, get_notifier, shutdown_notifier
from .uploads import AttachmentUploader, LocalObjectStorage, classify_file, get_uploader

__all__ = [
    "DispatchGateway",
    "get_dispatch_gateway",
    "insert_message",
    "list_thread_messages",
    "serialize_message",
    "soft_delete_message",
    "ProcessorClient",
    "build_processor_payload",
    "get_processor_client",
    "shutdown_processor_client",
    "get_profile",
    "upsert_profile",
    "RealtimeNotifier",
    "Subscription",
    "SubscriptionStatus",
    "get_notifier",
    "shutdown_notifier",
    "AttachmentUploader",
    "LocalObjectStorage",
    "classify_file",
    "get_uploader",
]
