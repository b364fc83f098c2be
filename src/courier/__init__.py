from .auth import AuthTokenManager, FileTokenStorage, MemoryTokenStorage, TokenStorage
from .context import ApiContext
from .dispatcher import Dispatcher, RequestHandle, attachment_filename, build_url, save_download
from .env import load_client_config_from_env
from .errors import (
    ClassifiedError,
    ErrorKind,
    TransportError,
    classify,
    is_retryable,
    is_retryable_status,
    parse_retry_after,
)
from .events import EventBus
from .interceptors import (
    InterceptorContext,
    InterceptorPipeline,
    detect_unauthorized,
    flag_forbidden,
    inject_auth_header,
    log_server_errors,
    notify_on_error,
    track_connectivity,
)
from .loading import LoadingStateManager
from .notifications import Notification, NotificationAction, NotificationQueue
from .policies import coerce_retry_predicate, default_retry_predicate
from .recovery import ErrorRecoveryManager, FailedRequest
from .retry import compute_delay, execute_with_retry
from .scheduler import ConcurrencyScheduler, Outcome, parallel
from .state import ActiveRequest, AuthStatus, LoadingState, RetryState
from .transports import AiohttpTransport, HttpxTransport, RequestsTransport, coerce_transport
from .types import AuthConfig, ClientConfig, RequestConfig, Response, RetryPolicy

__all__ = [
    "ClientConfig",
    "RequestConfig",
    "Response",
    "RetryPolicy",
    "AuthConfig",
    "ApiContext",
    "Dispatcher",
    "RequestHandle",
    "build_url",
    "attachment_filename",
    "save_download",
    "ClassifiedError",
    "ErrorKind",
    "TransportError",
    "classify",
    "is_retryable",
    "is_retryable_status",
    "parse_retry_after",
    "execute_with_retry",
    "compute_delay",
    "coerce_retry_predicate",
    "default_retry_predicate",
    "ConcurrencyScheduler",
    "Outcome",
    "parallel",
    "AuthTokenManager",
    "TokenStorage",
    "MemoryTokenStorage",
    "FileTokenStorage",
    "AuthStatus",
    "ActiveRequest",
    "RetryState",
    "LoadingState",
    "EventBus",
    "InterceptorPipeline",
    "InterceptorContext",
    "inject_auth_header",
    "detect_unauthorized",
    "log_server_errors",
    "flag_forbidden",
    "track_connectivity",
    "notify_on_error",
    "ErrorRecoveryManager",
    "FailedRequest",
    "LoadingStateManager",
    "NotificationQueue",
    "Notification",
    "NotificationAction",
    "HttpxTransport",
    "AiohttpTransport",
    "RequestsTransport",
    "coerce_transport",
    "load_client_config_from_env",
]
