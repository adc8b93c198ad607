"""Request validation and task operations behind the video API."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Any

from .dashscope import DEFAULT_SIZES, MAX_PROMPT_LENGTH, DashScopeError
from .models import TaskRequest, TaskStatusResponse, TaskStore, VideoCreateRequest

TASK_TYPES = ("i2v-first-frame", "i2v-keyframes", "t2v", "image_reference", "video_repainting")
MODELS = (
    "wanx2.1-i2v-turbo",
    "wanx2.1-i2v-plus",
    "wanx2.1-t2v-turbo",
    "wanx2.1-t2v-plus",
    "wanx2.1-vace-plus",
)
I2V_MODELS = ("wanx2.1-i2v-turbo", "wanx2.1-i2v-plus")
T2V_MODELS = ("wanx2.1-t2v-turbo", "wanx2.1-t2v-plus")
TURBO_MODELS = ("wanx2.1-i2v-turbo", "wanx2.1-t2v-turbo")
CONTROL_CONDITIONS = ("posebodyface", "posebody", "depth", "scribble")
VACE_RESOLUTIONS = ("1280*720", "720*1280", "960*960", "832*1088", "1088*832")
MAX_SEED = 2147483647
MAX_REF_IMAGES = 3
FIXED_DURATION = 5
POLL_TIMEOUT = 15 * 60.0
VIDEO_LIFETIME = timedelta(hours=24)
_MAX_TASK_ID = 2**32 - 1

logger = logging.getLogger(__name__)


class HandlerError(Exception):
    """A request could not be served; carries the HTTP status to answer with."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


def _bad_request(message: str) -> HandlerError:
    return HandlerError(400, message)


def validate_create_request(req: VideoCreateRequest) -> VideoCreateRequest:
    """Check a create request, fill in its defaults and return it.

    Raises HandlerError with status 400 on the first rule that is broken.
    """
    if req.duration == 0:
        req.duration = FIXED_DURATION
    if not req.resolution:
        req.resolution = "720P"

    if req.task_type not in TASK_TYPES:
        raise _bad_request("不支持的任务类型")
    if req.model not in MODELS:
        raise _bad_request("不支持的模型")
    if len(req.prompt) > MAX_PROMPT_LENGTH:
        raise _bad_request("提示词长度不能超过800个字符")

    if req.task_type in ("i2v-first-frame", "i2v-keyframes"):
        if req.model not in I2V_MODELS:
            raise _bad_request("图生视频任务只支持wanx2.1-i2v-turbo和wanx2.1-i2v-plus模型")
        if not req.image_url:
            raise _bad_request("图生视频任务需要提供图片")
    elif req.task_type == "t2v":
        if req.model not in T2V_MODELS:
            raise _bad_request("文生视频任务只支持wanx2.1-t2v-turbo和wanx2.1-t2v-plus模型")
    elif req.task_type == "image_reference":
        if req.model != "wanx2.1-vace-plus":
            raise _bad_request("多图参考任务只支持wanx2.1-vace-plus模型")
        if not 1 <= len(req.ref_images_url) <= MAX_REF_IMAGES:
            raise _bad_request("多图参考任务需要提供1-3张参考图片")
        if req.obj_or_bg and len(req.obj_or_bg) != len(req.ref_images_url):
            raise _bad_request("图片类型数组长度必须与图片数量一致")
        if req.obj_or_bg.count("bg") > 1:
            raise _bad_request("最多只能有一张背景图片")
    elif req.task_type == "video_repainting":
        if req.model != "wanx2.1-vace-plus":
            raise _bad_request("视频重绘任务只支持wanx2.1-vace-plus模型")
        if not req.video_url:
            raise _bad_request("视频重绘任务需要提供输入视频URL")
        if not req.control_condition:
            raise _bad_request("视频重绘任务需要指定特征提取方式(control_condition)，这是必选参数")
        if req.control_condition not in CONTROL_CONDITIONS:
            raise _bad_request(
                "无效的特征提取方式，支持: posebodyface(脸部+肢体), posebody(仅肢体), "
                "depth(构图轮廓), scribble(线稿)"
            )
        if req.strength == 0.0:
            req.strength = 1.0
        if not 0.0 <= req.strength <= 1.0:
            raise _bad_request("控制强度必须在0.0-1.0范围内，默认为1.0")
        if len(req.ref_images_url) > 1:
            raise _bad_request("视频重绘任务最多只能使用1张参考图片")

    if req.task_type == "i2v-keyframes":
        if req.model != "wanx2.1-i2v-plus":
            raise _bad_request("首尾帧任务只支持wanx2.1-i2v-plus模型")
        if not req.end_image_url:
            raise _bad_request("首尾帧任务需要提供结束帧图片")

    if req.model in TURBO_MODELS and req.resolution not in ("480P", "720P"):
        raise _bad_request("turbo模型只支持480P和720P分辨率")
    if req.model == "wanx2.1-i2v-plus" and req.resolution != "720P":
        raise _bad_request("wanx2.1-i2v-plus模型只支持720P分辨率")
    if req.model == "wanx2.1-t2v-plus" and req.resolution != "720P":
        raise _bad_request("wanx2.1-t2v-plus模型只支持720P分辨率")
    if req.model == "wanx2.1-vace-plus" and req.resolution not in VACE_RESOLUTIONS:
        raise _bad_request(
            "wanx2.1-vace-plus模型只支持1280*720、720*1280、960*960、832*1088、1088*832分辨率"
        )

    req.duration = FIXED_DURATION

    if req.seed is not None and not 0 <= req.seed <= MAX_SEED:
        raise _bad_request("随机数种子必须在0-2147483647范围内")

    if not req.size and req.resolution:
        if req.model == "wanx2.1-vace-plus":
            req.size = req.resolution
        else:
            req.size = DEFAULT_SIZES.get(req.resolution, "")
    return req


def get_model_by_task_type(task_type: str) -> str:
    """Return the default model for an image-to-video task type."""
    return {
        "i2v-first-frame": "wanx2.1-i2v-turbo",
        "i2v-keyframes": "wanx2.1-i2v-plus",
    }.get(task_type, "unknown")


def _compact_json(values: list[str]) -> str:
    text = json.dumps(values, ensure_ascii=False, separators=(",", ":"))
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text


def _parse_task_id(text: str) -> int:
    if not re.fullmatch(r"[0-9]+", text or ""):
        raise _bad_request("无效的任务ID")
    value = int(text)
    if value > _MAX_TASK_ID:
        raise _bad_request("无效的任务ID")
    return value


def _trunc_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


class VideoHandler:
    """Serves the video task operations over a task store and a DashScope client."""

    def __init__(self, store: TaskStore, service: Any) -> None:
        self.store = store
        self.service = service

    def create_video_task(self, payload: Any) -> dict[str, Any]:
        """Validate and store a new task, then process it in the background."""
        try:
            req = VideoCreateRequest.from_dict(payload)
        except ValueError as exc:
            raise _bad_request(f"请求参数错误: {exc}") from exc
        validate_create_request(req)

        record = TaskRequest(
            task_type=req.task_type,
            model=req.model,
            prompt=req.prompt,
            image_url=req.image_url,
            end_image_url=req.end_image_url,
            status="pending",
            duration=req.duration,
            resolution=req.resolution,
            size=req.size,
            seed=req.seed,
            prompt_extend=req.prompt_extend,
            video_url_input=req.video_url,
            control_condition=req.control_condition,
            strength=req.strength,
            watermark=req.watermark,
        )
        if req.ref_images_url:
            record.ref_images_url = _compact_json(req.ref_images_url)
        if req.obj_or_bg:
            record.obj_or_bg = _compact_json(req.obj_or_bg)

        try:
            self.store.create(record)
        except sqlite3.Error as exc:
            raise HandlerError(500, "创建任务记录失败") from exc

        worker = threading.Thread(
            target=self.process_video_task, args=(record.id, req), daemon=True
        )
        worker.start()
        return {"message": "任务已创建", "task_id": record.id, "status": "pending"}

    def get_task_status(self, task_id: str) -> dict[str, Any]:
        """Return the status summary of a stored task."""
        task = self._load(task_id)
        return TaskStatusResponse(
            task_id=task.task_id,
            status=task.status,
            video_url=task.video_url,
            error=task.error,
            request_id=task.request_id,
        ).to_dict()

    def get_task_detail(self, task_id: str) -> dict[str, Any]:
        """Return the full stored record of a task."""
        return {"data": self._load(task_id).to_dict()}

    def get_task_history(
        self, page: int = 1, page_size: int = 10, task_type: str = "", status: str = ""
    ) -> dict[str, Any]:
        """Return one page of tasks, newest first, with pagination details."""
        if page_size == 0:
            raise HandlerError(500, "查询历史记录失败")
        offset = (page - 1) * page_size
        try:
            total = self.store.count(task_type, status)
            tasks = self.store.list(task_type, status, offset, page_size)
        except sqlite3.Error as exc:
            raise HandlerError(500, "查询历史记录失败") from exc
        return {
            "data": [task.to_dict() for task in tasks],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_page": _trunc_div(total + page_size - 1, page_size),
            },
        }

    def delete_task(self, task_id: str) -> dict[str, Any]:
        """Soft-delete a task; deleting a missing task still succeeds."""
        record_id = _parse_task_id(task_id)
        try:
            self.store.delete(record_id)
        except sqlite3.Error as exc:
            raise HandlerError(500, "删除任务失败") from exc
        return {"message": "任务已删除"}

    def process_video_task(self, record_id: int, req: VideoCreateRequest) -> None:
        """Submit a task to DashScope, wait for it and record the outcome."""
        self._update(record_id, status="running")
        try:
            resp = self.service.create_video_generation_task(req)
        except DashScopeError as exc:
            self._update(record_id, status="failed", error=str(exc))
            return

        self._update(record_id, task_id=resp.output.task_id, request_id=resp.request_id)

        try:
            final = self.service.poll_task_status(resp.output.task_id, max_wait=POLL_TIMEOUT)
        except DashScopeError as exc:
            self._update(record_id, status="failed", error=str(exc))
            return

        success_time = datetime.now().astimezone()
        self._update(
            record_id,
            status="succeeded",
            video_url=final.output.video_url,
            success_time=success_time,
            expire_time=success_time + VIDEO_LIFETIME,
        )

    def _load(self, task_id: str) -> TaskRequest:
        record_id = _parse_task_id(task_id)
        try:
            task = self.store.get(record_id)
        except sqlite3.Error as exc:
            raise HandlerError(500, "查询任务失败") from exc
        if task is None:
            raise HandlerError(404, "任务不存在")
        return task

    def _update(self, record_id: int, **changes: Any) -> None:
        # Empty values are left alone, as a partial update of set fields only.
        changes = {name: value for name, value in changes.items() if value}
        if not changes:
            return
        try:
            self.store.update(record_id, **changes)
        except sqlite3.Error:
            logger.exception("failed to update task %s", record_id)