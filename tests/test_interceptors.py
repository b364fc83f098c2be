import logging
from types import SimpleNamespace

import pytest

from courier import (
    ClassifiedError,
    ErrorKind,
    EventBus,
    InterceptorContext,
    InterceptorPipeline,
    NotificationQueue,
    RequestConfig,
    Response,
)
from courier.events import API_SERVER_ERROR, AUTH_FORBIDDEN, NETWORK_OFFLINE, NETWORK_ONLINE
from courier.interceptors import (
    detect_unauthorized,
    flag_forbidden,
    log_server_errors,
    notify_on_error,
    track_connectivity,
)
from courier.recovery import ErrorRecoveryManager


def _ctx(**kw):
    return InterceptorContext(request_id="req_1", config=RequestConfig(url="https://api.test/x"), **kw)


def _err(kind, **kw):
    return ClassifiedError(kind=kind, message=kind.value, **kw)


@pytest.mark.asyncio
async def test_request_chain_runs_in_registration_order():
    pipeline = InterceptorPipeline()
    seen = []

    def first(cfg):
        seen.append("first")
        return cfg.with_headers({"X-Order": "1"})

    async def second(cfg):
        seen.append("second")
        return cfg.with_headers({"X-Order": cfg.headers["X-Order"] + "2"})

    pipeline.add_request(first)
    pipeline.add_request(second)
    out = await pipeline.run_request(RequestConfig(url="/a"))
    assert seen == ["first", "second"]
    assert out.headers["X-Order"] == "12"


@pytest.mark.asyncio
async def test_request_chain_stops_on_exception():
    pipeline = InterceptorPipeline()
    after = []

    def reject(cfg):
        raise PermissionError("blocked")

    pipeline.add_request(reject)
    pipeline.add_request(lambda cfg: after.append(cfg) or cfg)
    with pytest.raises(PermissionError):
        await pipeline.run_request(RequestConfig(url="/a"))
    assert after == []


@pytest.mark.asyncio
async def test_request_interceptor_must_return_config():
    pipeline = InterceptorPipeline()
    pipeline.add_request(lambda cfg: None)
    with pytest.raises(TypeError):
        await pipeline.run_request(RequestConfig(url="/a"))


@pytest.mark.asyncio
async def test_response_chain_can_replace_result_and_unsubscribe():
    pipeline = InterceptorPipeline()

    async def recover(result, ctx):
        if isinstance(result, ClassifiedError) and result.http_status == 404:  # noqa: PLR2004
            return Response(200, data=None, request_id=ctx.request_id)
        return result

    remove = pipeline.add_response(recover)
    out = await pipeline.run_response(_err(ErrorKind.CLIENT_ERROR, http_status=404), _ctx())
    assert isinstance(out, Response)
    assert out.request_id == "req_1"
    remove()
    assert pipeline.response == []


def test_config_copies_are_independent():
    headers = {"A": "1"}
    cfg = RequestConfig(url="/a", headers=headers)
    headers["A"] = "2"
    other = cfg.with_headers({"B": "x"})
    assert cfg.headers == {"A": "1"}
    assert other.headers == {"A": "1", "B": "x"}


@pytest.mark.asyncio
async def test_detect_unauthorized_passes_through_other_results():
    auth = SimpleNamespace(handle_unauthorized=None)
    interceptor = detect_unauthorized(auth)
    ok = Response(200)
    assert await interceptor(ok, _ctx()) is ok
    err = _err(ErrorKind.VALIDATION)
    assert await interceptor(err, _ctx()) is err
    # no replay available -> left alone
    auth_err = _err(ErrorKind.AUTHENTICATION)
    assert await interceptor(auth_err, _ctx()) is auth_err


@pytest.mark.asyncio
async def test_detect_unauthorized_returns_replay_outcome_or_error():
    calls = []

    async def handle(replay, **context):
        calls.append(context)
        return await replay()

    async def replay():
        return Response(200, data="again")

    auth = SimpleNamespace(handle_unauthorized=handle, sent_token=lambda cfg: "old")
    out = await detect_unauthorized(auth)(_err(ErrorKind.AUTHENTICATION), _ctx(replay=replay))
    assert out.data == "again"
    assert calls == [{"sent_token": "old", "request_id": "req_1"}]

    async def failing(replay, **context):
        raise _err(ErrorKind.AUTHENTICATION)

    auth = SimpleNamespace(handle_unauthorized=failing, sent_token=lambda cfg: None)
    interceptor = detect_unauthorized(auth)
    out = await interceptor(_err(ErrorKind.AUTHENTICATION), _ctx(replay=replay))
    assert isinstance(out, ClassifiedError)


def test_log_server_errors_logs_and_emits(caplog):
    events = EventBus()
    emitted = []
    events.on(API_SERVER_ERROR, emitted.append)
    interceptor = log_server_errors(events)
    with caplog.at_level(logging.ERROR, logger="courier"):
        interceptor(_err(ErrorKind.SERVER_ERROR, http_status=503), _ctx())
        interceptor(_err(ErrorKind.VALIDATION), _ctx())
    assert len(emitted) == 1
    assert emitted[0]["status"] == 503  # noqa: PLR2004
    assert "status=503" in caplog.text


def test_flag_forbidden_emits_on_authorization_only():
    events = EventBus()
    emitted = []
    events.on(AUTH_FORBIDDEN, emitted.append)
    interceptor = flag_forbidden(events)
    interceptor(_err(ErrorKind.AUTHORIZATION, http_status=403), _ctx())
    interceptor(Response(200), _ctx())
    assert [e["request_id"] for e in emitted] == ["req_1"]


def test_track_connectivity_transitions_once():
    events = EventBus()
    seen = []
    events.on(NETWORK_OFFLINE, lambda p: seen.append("offline"))
    events.on(NETWORK_ONLINE, lambda p: seen.append("online"))
    api = SimpleNamespace(online=True, events=events)
    interceptor = track_connectivity(api)
    interceptor(_err(ErrorKind.NETWORK), _ctx())
    interceptor(_err(ErrorKind.NETWORK), _ctx())
    assert api.online is False
    interceptor(Response(200), _ctx())
    interceptor(Response(200), _ctx())
    assert seen == ["offline", "online"]


def test_track_connectivity_stores_idempotent_network_failures():
    api = SimpleNamespace(online=True, events=EventBus())
    recovery = ErrorRecoveryManager(send=None)
    interceptor = track_connectivity(api, recovery)
    interceptor(_err(ErrorKind.NETWORK), _ctx())
    post = InterceptorContext(
        request_id="req_2", config=RequestConfig(url="https://api.test/x", method="POST")
    )
    interceptor(_err(ErrorKind.NETWORK), post)
    interceptor(_err(ErrorKind.SERVER_ERROR), _ctx())
    assert [entry.id for entry in recovery.failed] == ["GET https://api.test/x"]


@pytest.mark.asyncio
async def test_notify_on_error_skips_aborted():
    queue = NotificationQueue()
    interceptor = notify_on_error(queue)
    interceptor(_err(ErrorKind.ABORTED), _ctx())
    interceptor(_err(ErrorKind.VALIDATION, user_message="Email is required"), _ctx())
    interceptor(Response(200), _ctx())
    assert [n.message for n in queue.active] == ["Email is required"]
    queue.dismiss_all()
