"""Services for feed_sync."""

from .gateway import ApiError, ApiErrorCode, ApiRequest, HttpTransport, RetryGateway, RetryPolicy
from .api_client import PlatformClient, RemoteItem
from .credential_pool import CredentialPool, FirstAvailableStrategy, RoundRobinStrategy
from .scheduler import TaskScheduler
from .materializer import MarkdownMaterializer
from .orchestrator import NoCredentialError, SyncInProgressError, SyncOrchestrator

__all__ = [
    "ApiError",
    "ApiErrorCode",
    "ApiRequest",
    "HttpTransport",
    "RetryGateway",
    "RetryPolicy",
    "PlatformClient",
    "RemoteItem",
    "CredentialPool",
    "FirstAvailableStrategy",
    "RoundRobinStrategy",
    "TaskScheduler",
    "MarkdownMaterializer",
    "NoCredentialError",
    "SyncInProgressError",
    "SyncOrchestrator",
]
