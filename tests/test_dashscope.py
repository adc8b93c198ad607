import json

import pytest
import requests
import responses

from bailian_video.dashscope import (
    BASE_URL,
    TASK_STATUS_ENDPOINT,
    VIDEO_SYNTHESIS_ENDPOINT,
    DashScopeError,
    DashScopeService,
    build_task_payload,
)
from bailian_video.models import VideoCreateRequest

CREATE_URL = BASE_URL + VIDEO_SYNTHESIS_ENDPOINT


def status_url(task_id):
    return f"{BASE_URL}{TASK_STATUS_ENDPOINT}/{task_id}"


def make_request(**kwargs):
    base = {"task_type": "t2v", "model": "wanx2.1-t2v-turbo", "prompt": "a cat", "duration": 5}
    base.update(kwargs)
    return VideoCreateRequest(**base)


def test_payload_t2v_default_size():
    payload = build_task_payload(make_request(resolution="720P"))
    assert payload == {
        "model": "wanx2.1-t2v-turbo",
        "input": {"prompt": "a cat"},
        "parameters": {"size": "1280*720", "duration": 5},
    }


def test_payload_480p_size_and_explicit_size_wins():
    assert build_task_payload(make_request(resolution="480P"))["parameters"]["size"] == "832*480"
    explicit = build_task_payload(make_request(resolution="480P", size="480*832"))
    assert explicit["parameters"]["size"] == "480*832"


def test_payload_keyframes():
    req = make_request(task_type="i2v-keyframes", model="wanx2.1-i2v-plus", image_url="a.png", end_image_url="b.png")
    payload = build_task_payload(req)
    assert payload["input"] == {"prompt": "a cat", "img_url": "a.png", "end_img_url": "b.png"}


def test_payload_first_frame_ignores_end_image():
    req = make_request(task_type="i2v-first-frame", image_url="a.png", end_image_url="b.png")
    assert "end_img_url" not in build_task_payload(req)["input"]


def test_payload_image_reference():
    req = make_request(
        task_type="image_reference", model="wanx2.1-vace-plus", ref_images_url=["a", "b"], obj_or_bg=["obj", "bg"]
    )
    payload = build_task_payload(req)
    assert payload["input"]["function"] == "image_reference"
    assert payload["input"]["ref_images_url"] == ["a", "b"]
    assert payload["parameters"]["obj_or_bg"] == ["obj", "bg"]


def test_payload_video_repainting_strength():
    req = make_request(
        task_type="video_repainting", model="wanx2.1-vace-plus", video_url="in.mp4", control_condition="depth"
    )
    payload = build_task_payload(req)
    assert payload["input"]["function"] == "video_repainting"
    assert payload["input"]["video_url"] == "in.mp4"
    assert payload["parameters"]["control_condition"] == "depth"
    assert "strength" not in payload["parameters"]
    req.strength = 0.5
    assert build_task_payload(req)["parameters"]["strength"] == 0.5


def test_payload_advanced_parameters():
    req = make_request(prompt_extend=False, seed=0, watermark=True)
    params = build_task_payload(req)["parameters"]
    assert params["prompt_extend"] is False
    assert params["seed"] == 0
    assert params["watermark"] is True


def test_payload_truncates_prompt():
    prompt = "猫" * 900
    payload = build_task_payload(make_request(prompt=prompt))
    assert payload["input"]["prompt"] == prompt[:800]
    assert len(payload["input"]["prompt"]) == 800


def test_api_key_from_environment(monkeypatch):
    monkeypatch.setenv("DASHSCOPE_API_KEY", "secret")
    assert DashScopeService().api_key == "secret"
    monkeypatch.delenv("DASHSCOPE_API_KEY")
    assert DashScopeService().api_key == "placeholder"


def test_create_task_sends_request():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(
            responses.POST,
            CREATE_URL,
            json={"output": {"task_id": "t1", "task_status": "PENDING"}, "request_id": "r1"},
        )
        resp = service.create_video_generation_task(make_request(resolution="720P"))
        sent = rsps.calls[0].request
    assert resp.output.task_id == "t1"
    assert resp.request_id == "r1"
    assert sent.headers["Authorization"] == "Bearer placeholder"
    assert sent.headers["X-DashScope-Async"] == "enable"
    assert json.loads(sent.body) == build_task_payload(make_request(resolution="720P"))


def test_create_task_http_error():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, CREATE_URL, status=400, body="bad input")
        with pytest.raises(DashScopeError, match="400") as info:
            service.create_video_generation_task(make_request())
    assert "bad input" in str(info.value)


def test_create_task_invalid_json():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, CREATE_URL, body="not json")
        with pytest.raises(DashScopeError, match="解析响应失败"):
            service.create_video_generation_task(make_request())


def test_create_task_connection_error():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, CREATE_URL, body=requests.ConnectionError("down"))
        with pytest.raises(DashScopeError, match="发送请求失败"):
            service.create_video_generation_task(make_request())


def test_get_task_status():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, status_url("t9"), json={"output": {"task_id": "t9", "task_status": "RUNNING"}})
        resp = service.get_task_status("t9")
        sent = rsps.calls[0].request
    assert resp.output.task_status == "RUNNING"
    assert sent.headers["Authorization"] == "Bearer placeholder"


def test_poll_until_succeeded():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        url = status_url("t1")
        rsps.add(responses.GET, url, json={"output": {"task_status": "PENDING"}})
        rsps.add(responses.GET, url, json={"output": {"task_status": "RUNNING"}})
        rsps.add(responses.GET, url, json={"output": {"task_status": "SUCCEEDED", "video_url": "http://v"}})
        resp = service.poll_task_status("t1", max_wait=5, poll_interval=0)
        calls = len(rsps.calls)
    assert resp.output.video_url == "http://v"
    assert calls == 3


def test_poll_failed():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, status_url("t1"), json={"output": {"task_status": "FAILED"}})
        with pytest.raises(DashScopeError, match="任务执行失败"):
            service.poll_task_status("t1", max_wait=5, poll_interval=0)


def test_poll_unknown_status():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, status_url("t1"), json={"output": {"task_status": "CANCELED"}})
        with pytest.raises(DashScopeError, match="未知任务状态: CANCELED"):
            service.poll_task_status("t1", max_wait=5, poll_interval=0)


def test_poll_timeout_without_requests():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        with pytest.raises(DashScopeError, match="任务轮询超时"):
            service.poll_task_status("t1", max_wait=0, poll_interval=0)
        assert len(rsps.calls) == 0


def test_poll_propagates_http_error():
    service = DashScopeService(api_key="placeholder")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, status_url("t1"), status=500, body="oops")
        with pytest.raises(DashScopeError, match="500"):
            service.poll_task_status("t1", max_wait=5, poll_interval=0)