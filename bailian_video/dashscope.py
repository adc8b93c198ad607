"""Client for the DashScope video synthesis API."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

import requests

from .models import DashScopeVideoResponse, VideoCreateRequest

BASE_URL = "https://dashscope.aliyuncs.com/api/v1"
VIDEO_SYNTHESIS_ENDPOINT = "/services/aigc/video-generation/video-synthesis"
TASK_STATUS_ENDPOINT = "/tasks"
MAX_PROMPT_LENGTH = 800
DEFAULT_SIZES = {"480P": "832*480", "720P": "1280*720"}

logger = logging.getLogger(__name__)


class DashScopeError(Exception):
    """A call to the DashScope API failed."""


def build_task_payload(req: VideoCreateRequest) -> dict[str, Any]:
    """Build the JSON body for a video synthesis request."""
    img_url = end_img_url = function = video_url = control_condition = ""
    ref_images: list[str] = []
    obj_or_bg: list[str] = []
    strength = 0.0

    if req.task_type == "i2v-first-frame":
        img_url = req.image_url
    elif req.task_type == "i2v-keyframes":
        img_url = req.image_url
        end_img_url = req.end_image_url
    elif req.task_type == "image_reference":
        function = "image_reference"
        ref_images = req.ref_images_url
        obj_or_bg = req.obj_or_bg
    elif req.task_type == "video_repainting":
        function = "video_repainting"
        video_url = req.video_url
        ref_images = req.ref_images_url
        control_condition = req.control_condition
        if req.strength > 0:
            strength = req.strength

    task_input: dict[str, Any] = {"prompt": req.prompt[:MAX_PROMPT_LENGTH]}
    for key, value in (
        ("img_url", img_url),
        ("end_img_url", end_img_url),
        ("function", function),
        ("ref_images_url", list(ref_images)),
        ("video_url", video_url),
    ):
        if value:
            task_input[key] = value

    size = req.size or DEFAULT_SIZES.get(req.resolution, "")
    parameters: dict[str, Any] = {}
    if size:
        parameters["size"] = size
    parameters["duration"] = req.duration
    for key, value in (
        ("prompt_extend", req.prompt_extend),
        ("seed", req.seed),
        ("watermark", req.watermark),
    ):
        if value is not None:
            parameters[key] = value
    for key, value in (
        ("obj_or_bg", list(obj_or_bg)),
        ("control_condition", control_condition),
        ("strength", strength),
    ):
        if value:
            parameters[key] = value

    return {"model": req.model, "input": task_input, "parameters": parameters}


class DashScopeService:
    """Creates and tracks asynchronous video generation tasks."""

    def __init__(
        self,
        api_key: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        if api_key is None:
            api_key = os.environ.get("DASHSCOPE_API_KEY", "")
        if not api_key:
            logger.warning("DASHSCOPE_API_KEY is not set; set a valid API key before making calls")
            api_key = "placeholder"
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def create_video_generation_task(self, req: VideoCreateRequest) -> DashScopeVideoResponse:
        """Submit a video synthesis task and return the initial response."""
        body = json.dumps(build_task_payload(req), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "X-DashScope-Async": "enable",
        }
        return self._request("POST", BASE_URL + VIDEO_SYNTHESIS_ENDPOINT, data=body, headers=headers)

    def get_task_status(self, task_id: str) -> DashScopeVideoResponse:
        """Fetch the current state of a task."""
        url = f"{BASE_URL}{TASK_STATUS_ENDPOINT}/{task_id}"
        return self._request("GET", url, headers={"Authorization": f"Bearer {self.api_key}"})

    def poll_task_status(
        self, task_id: str, max_wait: float = 900.0, poll_interval: float = 10.0
    ) -> DashScopeVideoResponse:
        """Poll a task every poll_interval seconds until it finishes or max_wait elapses."""
        start = time.monotonic()
        deadline = start + max_wait
        next_tick = start + poll_interval
        while True:
            if next_tick >= deadline:
                time.sleep(max(0.0, deadline - time.monotonic()))
                raise DashScopeError("任务轮询超时")
            time.sleep(max(0.0, next_tick - time.monotonic()))
            resp = self.get_task_status(task_id)
            status = resp.output.task_status
            if status == "SUCCEEDED":
                return resp
            if status == "FAILED":
                raise DashScopeError("任务执行失败")
            if status not in ("PENDING", "RUNNING"):
                raise DashScopeError(f"未知任务状态: {status}")
            next_tick = max(next_tick + poll_interval, time.monotonic())

    def _request(self, method: str, url: str, **kwargs: Any) -> DashScopeVideoResponse:
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise DashScopeError(f"发送请求失败: {exc}") from exc
        if resp.status_code != 200:
            raise DashScopeError(f"API请求失败，状态码: {resp.status_code}, 响应: {resp.text}")
        try:
            data = json.loads(resp.content)
        except ValueError as exc:
            raise DashScopeError(f"解析响应失败: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DashScopeError("解析响应失败: response is not a JSON object")
        return DashScopeVideoResponse.from_dict(data)