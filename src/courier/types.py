from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Union

ResponseType = Literal["json", "text", "bytes"]

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "X-Requested-With": "XMLHttpRequest",
}


@dataclass(frozen=True)
class AuthConfig:
    header: str = "Authorization"
    scheme: str = "Bearer"
    # Well-known storage key for the persisted token
    storage_key: str = "authToken"

    def header_value(self, token: str) -> str:
        return f"{self.scheme} {token}".strip()


@dataclass(frozen=True)
class RetryPolicy:
    # Delays are in seconds
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    # None -> default predicate; see policies.coerce_retry_predicate for accepted forms
    retry_predicate: Union[Callable[..., bool], str, None] = None
    # Let a RateLimited error's Retry-After override the computed delay
    respect_retry_after: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = ""
    timeout: Union[float, None] = 30.0
    default_headers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # Slots per scheduler; groups not listed in group_limits use concurrency_limit
    concurrency_limit: int = 3
    group_limits: Mapping[str, int] = field(default_factory=dict)
    auth: AuthConfig = field(default_factory=AuthConfig)
    response_type: ResponseType = "json"
    max_notifications: int = 5


@dataclass(frozen=True)
class RequestConfig:
    """One logical request. Instances are never mutated once built.

    Interceptors that need a different request return a new instance via
    ``replace`` or ``with_headers``; every instance holds its own copy of
    ``headers`` and ``params`` so two admitted requests never share them.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    params: Mapping[str, Any] = field(default_factory=dict)
    timeout: Union[float, None] = None
    retry_policy: Union[RetryPolicy, None] = None
    dedupe_key: Union[str, None] = None
    concurrency_group: str = "default"
    response_type: Union[ResponseType, None] = None
    # Called as on_progress(percent, sent, total) while the body is sent
    on_progress: Union[Callable[[float, int, int], Any], None] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", dict(self.headers or {}))
        object.__setattr__(self, "params", dict(self.params or {}))
        if isinstance(self.retry_policy, Mapping):
            object.__setattr__(self, "retry_policy", RetryPolicy(**self.retry_policy))
        elif self.retry_policy is not None and not isinstance(self.retry_policy, RetryPolicy):
            raise TypeError("retry_policy must be a RetryPolicy, a mapping or None")

    def replace(self, **changes) -> "RequestConfig":
        return replace(self, **changes)

    def with_headers(self, headers: Mapping[str, str]) -> "RequestConfig":
        return replace(self, headers={**self.headers, **headers})

    @classmethod
    def coerce(cls, value: Union["RequestConfig", Mapping[str, Any]]) -> "RequestConfig":
        if isinstance(value, RequestConfig):
            return value
        if isinstance(value, Mapping):
            return cls(**value)
        raise TypeError("request config must be a RequestConfig or a mapping")

    def merged_over(self, defaults: ClientConfig) -> "RequestConfig":
        """Layer this config over client defaults (caller values win)."""
        url = self.url
        if defaults.base_url and not url.startswith(("http://", "https://")):
            url = f"{defaults.base_url.rstrip('/')}/{url.lstrip('/')}"
        return replace(
            self,
            url=url,
            headers={**defaults.default_headers, **self.headers},
            timeout=self.timeout if self.timeout is not None else defaults.timeout,
            retry_policy=self.retry_policy or defaults.retry,
            response_type=self.response_type or defaults.response_type,
        )


@dataclass
class Response:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    # Body decoded according to the request's response_type
    data: Any = None
    request_id: Union[str, None] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300  # noqa: PLR2004, http status range

    @classmethod
    def coerce(cls, value: Any) -> "Response":
        if isinstance(value, Response):
            return value
        if isinstance(value, Mapping):
            status = value.get("status_code", value.get("statusCode"))
            if status is None:
                raise TypeError("transport result mapping needs status_code or statusCode")
            return cls(
                status_code=int(status),
                headers=dict(value.get("headers") or {}),
                body=value.get("body"),
            )
        raise TypeError(f"transport returned unsupported result type {type(value).__name__}")
