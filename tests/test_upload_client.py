from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from pdh_upload.adapters.upload_client import (
    ChunkTransferError,
    ResumableUploadClient,
    SessionInitError,
    SessionMeta,
    StatusProbeError,
    UploadError,
    error_message_for,
    parse_offset,
)
from pdh_upload.config import AppConfig
from pdh_upload.core.cancel import CancelToken, UserCanceled, UserPaused


def _resp(status: int = 200, payload=None, *, bad_json: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if bad_json:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload if payload is not None else {}
    return resp


def _client(**overrides) -> tuple[ResumableUploadClient, MagicMock]:
    values = dict(
        server_url="http://srv/api",
        token="jwt",
        attachment_token="att",
        max_retries=2,
        progress_block_bytes=4,
    )
    values.update(overrides)
    session = MagicMock()
    return ResumableUploadClient(AppConfig(**values), session=session), session


META = SessionMeta(category="image", original_name="a.png", mime_type="image/png", size=10)


def test_init_session_posts_metadata():
    client, session = _client()
    session.request.return_value = _resp(200, {"success": True, "data": {"uploadId": "abc"}})

    assert client.init_session(META) == "abc"

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ("POST", "http://srv/api/attachments/uploads")
    assert kwargs["json"] == {"category": "image", "originalName": "a.png", "mimeType": "image/png", "size": 10}
    assert kwargs["headers"]["Authorization"] == "Bearer jwt"
    assert kwargs["headers"]["X-Attachment-Token"] == "att"
    assert kwargs["timeout"] == (10, 120)


def test_init_session_without_upload_id_fails():
    client, session = _client()
    session.request.return_value = _resp(200, {"success": True, "data": {}})

    with pytest.raises(SessionInitError, match="初始化上传会话失败"):
        client.init_session(META)


def test_init_session_maps_http_errors():
    client, session = _client()
    session.request.return_value = _resp(413, {"message": "Request Entity Too Large"})

    with pytest.raises(SessionInitError) as exc:
        client.init_session(META)
    assert str(exc.value) == "文件大小超过限制"
    assert exc.value.status_code == 413


def test_init_session_network_error():
    client, session = _client()
    session.request.side_effect = requests.ConnectionError("down")

    with pytest.raises(SessionInitError, match="网络连接失败"):
        client.init_session(META)


def test_cancelled_token_sends_nothing():
    client, session = _client()
    token = CancelToken()
    token.cancel("cancel")

    with pytest.raises(UserCanceled):
        client.init_session(META, cancel=token)
    session.request.assert_not_called()


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"bytesReceived": 4194304}, 4194304),
        ({"bytesReceived": "-5"}, 0),
        ({"bytesReceived": None}, 0),
        ({}, 0),
        (None, 0),
    ],
)
def test_get_status_offsets(data, expected):
    client, session = _client()
    session.get.return_value = _resp(200, {"success": True, "data": data})

    assert client.get_status("abc") == expected
    assert session.get.call_args.args[0] == "http://srv/api/attachments/uploads/abc"


def test_get_status_retries_transient_errors():
    client, session = _client()
    session.get.side_effect = [
        requests.ConnectionError("reset"),
        _resp(503),
        _resp(200, {"data": {"bytesReceived": 7}}),
    ]

    with patch.object(client, "_sleep_backoff") as sleep:
        assert client.get_status("abc") == 7
    assert sleep.call_count == 2


def test_get_status_gives_up_after_max_retries():
    client, session = _client(max_retries=1)
    session.get.return_value = _resp(502, bad_json=True)

    with patch.object(client, "_sleep_backoff"):
        with pytest.raises(StatusProbeError, match="服务器内部错误"):
            client.get_status("abc")
    assert session.get.call_count == 2


def test_get_status_does_not_retry_404():
    client, session = _client()
    session.get.return_value = _resp(404, bad_json=True)

    with pytest.raises(StatusProbeError, match="上传会话不存在或已过期"):
        client.get_status("abc")
    assert session.get.call_count == 1


def _drain(url, *, params, data, headers, timeout):
    while data.read(4):
        pass
    return _resp(200, {"success": True})


def test_upload_chunk_streams_body_with_progress():
    client, session = _client()
    session.post.side_effect = _drain
    progress = []

    client.upload_chunk("abc", b"0123456789", 20, on_progress=progress.append)

    kwargs = session.post.call_args.kwargs
    assert session.post.call_args.args[0] == "http://srv/api/attachments/uploads/abc/chunk"
    assert kwargs["params"] == {"offset": 20}
    assert len(kwargs["data"]) == 10
    assert kwargs["headers"]["Content-Type"] == "application/octet-stream"
    assert progress == [4, 8, 10]


def test_upload_chunk_pause_interrupts_body():
    client, session = _client()
    token = CancelToken()

    def pause_midway(url, *, params, data, headers, timeout):
        data.read(4)
        token.cancel("pause")
        data.read(4)

    session.post.side_effect = pause_midway

    with pytest.raises(UserPaused):
        client.upload_chunk("abc", b"0123456789", 0, cancel=token)


def test_upload_chunk_rejected_offset():
    client, session = _client()
    session.post.return_value = _resp(409, {"message": "offset mismatch"})

    with pytest.raises(ChunkTransferError, match="offset mismatch") as exc:
        client.upload_chunk("abc", b"0123", 0)
    assert exc.value.status_code == 409


def test_complete_session_returns_attachment():
    client, session = _client()
    session.request.return_value = _resp(200, {"success": True, "data": {"id": "a1", "url": "/attachments/a1"}})

    assert client.complete_session("abc") == {"id": "a1", "url": "/attachments/a1"}
    assert session.request.call_args.args == ("POST", "http://srv/api/attachments/uploads/abc/complete")


def test_abort_session_swallows_errors():
    client, session = _client()
    session.request.return_value = _resp(404)

    client.abort_session("abc")

    assert session.request.call_args.args == ("POST", "http://srv/api/attachments/uploads/abc/abort")


def test_missing_server_url():
    client, _ = _client(server_url="")

    with pytest.raises(UploadError, match="SERVER_URL"):
        client.init_session(META)


@pytest.mark.parametrize(
    "status, payload, expected",
    [
        (400, {"message": "类别不合法"}, "类别不合法"),
        (400, {}, "请求参数错误"),
        (401, {}, "未授权访问，请检查访问令牌"),
        (403, {"message": ""}, "禁止访问"),
        (415, {"message": "Unsupported Media Type"}, "不支持的文件类型"),
        (500, {"message": "数据库不可用"}, "数据库不可用"),
        (418, {}, "请求失败 (HTTP 418)"),
    ],
)
def test_error_message_for(status, payload, expected):
    assert error_message_for(_resp(status, payload)) == expected


def test_parse_offset_rejects_garbage():
    assert parse_offset(True) == 0
    assert parse_offset(float("nan")) == 0
    assert parse_offset("abc") == 0
    assert parse_offset(12.9) == 12
