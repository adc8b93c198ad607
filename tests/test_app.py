import time

import pytest

from bailian_video.app import create_app
from bailian_video.dashscope import DashScopeError
from bailian_video.handlers import VideoHandler
from bailian_video.models import TaskRequest, TaskStore


class FailingService:
    def create_video_generation_task(self, req):
        raise DashScopeError("发送请求失败: offline")

    def poll_task_status(self, task_id, max_wait=900.0, poll_interval=10.0):
        raise AssertionError("should not poll")


@pytest.fixture
def store(tmp_path):
    s = TaskStore(str(tmp_path / "tasks.db"))
    yield s
    s.close()


@pytest.fixture
def dirs(tmp_path):
    static = tmp_path / "static"
    uploads = tmp_path / "uploads"
    static.mkdir()
    uploads.mkdir()
    (static / "index.html").write_text("<h1>home</h1>", encoding="utf-8")
    (static / "history.html").write_text("<h1>history</h1>", encoding="utf-8")
    (static / "task-detail.html").write_text("<h1>detail</h1>", encoding="utf-8")
    (uploads / "pic.png").write_bytes(b"\x89PNG")
    return static, uploads


@pytest.fixture
def client(store, dirs):
    static, uploads = dirs
    app = create_app(VideoHandler(store, FailingService()), str(static), str(uploads))
    return app.test_client()


def _wait_for_status(store, record_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        task = store.get(record_id)
        if task is not None and task.status == status:
            return task
        time.sleep(0.01)
    raise AssertionError(f"task {record_id} never reached {status}")


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok", "message": "Bailian video generation service is running"}


def test_pages_and_static(client):
    assert client.get("/").data == b"<h1>home</h1>"
    assert client.get("/history").data == b"<h1>history</h1>"
    assert client.get("/task-detail/7").data == b"<h1>detail</h1>"
    assert client.get("/static/index.html").data == b"<h1>home</h1>"
    assert client.get("/uploads/pic.png").data == b"\x89PNG"
    assert client.get("/video-generation").status_code == 404


def test_create_and_status(client, store):
    resp = client.post(
        "/api/video/create",
        json={"task_type": "t2v", "model": "wanx2.1-t2v-turbo", "prompt": "a cat"},
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["message"] == "任务已创建"
    assert body["status"] == "pending"
    _wait_for_status(store, body["task_id"], "failed")
    status = client.get(f"/api/video/status/{body['task_id']}").get_json()
    assert status["status"] == "failed"
    assert status["error"] == "发送请求失败: offline"
    detail = client.get(f"/api/video/detail/{body['task_id']}").get_json()
    assert detail["data"]["size"] == "1280*720"


def test_create_bad_json(client, store):
    resp = client.post("/api/video/create", data="{not json", content_type="application/json")
    assert resp.status_code == 400
    assert resp.get_json()["error"].startswith("请求参数错误: ")
    assert store.count() == 0


def test_create_validation_error(client):
    resp = client.post(
        "/api/video/create",
        json={"task_type": "other", "model": "wanx2.1-t2v-turbo", "prompt": "a cat"},
    )
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "不支持的任务类型"}


def test_invalid_and_missing_ids(client):
    assert client.get("/api/video/status/abc").status_code == 400
    resp = client.get("/api/video/detail/99")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "任务不存在"}


def test_delete(client, store):
    record = store.create(TaskRequest(task_type="t2v", model="wanx2.1-t2v-turbo"))
    resp = client.delete(f"/api/video/{record.id}")
    assert resp.get_json() == {"message": "任务已删除"}
    assert store.get(record.id) is None


def test_history(client, store):
    ids = [store.create(TaskRequest(task_type="t2v", model="wanx2.1-t2v-turbo")).id for _ in range(2)]
    body = client.get("/api/video/history?page_size=1").get_json()
    assert [item["id"] for item in body["data"]] == [max(ids)]
    assert body["pagination"]["total"] == len(ids)
    assert body["pagination"]["total_page"] == len(ids)
    assert body["pagination"]["page"] == 1


def test_history_unparsable_page(client, store):
    record = store.create(TaskRequest(task_type="t2v", model="wanx2.1-t2v-turbo"))
    body = client.get("/api/video/history?page=abc").get_json()
    assert body["pagination"]["page"] == 0
    assert [item["id"] for item in body["data"]] == [record.id]


def test_cors_headers(client):
    resp = client.get("/health", headers={"Origin": "https://example.com"})
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["Access-Control-Expose-Headers"] == "Content-Length"
    preflight = client.options("/api/video/create", headers={"Origin": "https://example.com"})
    assert preflight.status_code == 204
    assert preflight.headers["Access-Control-Allow-Methods"] == "GET,POST,PUT,DELETE,OPTIONS"
    assert preflight.headers["Access-Control-Allow-Credentials"] == "true"