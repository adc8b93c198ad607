# bailian_video

A small HTTP service that creates video generation tasks on the DashScope
Wanx models and follows each task until it finishes.

Tasks are stored in a local SQLite database, `bailian.db` by default. When a
task is created, a background thread does the following:

1. It submits the task to DashScope.
2. It polls the task status every 10 seconds, for up to 15 minutes.
3. It records the outcome. A successful task gets its video URL, a success
   time and an expiry time 24 hours later. A failed task gets an error message.

## Installation

```
pip install .
```

To install with the test dependencies (`pytest`, `responses`):

```
pip install .[test]
```

## Running

Set your API key and start the server:

```
export DASHSCOPE_API_KEY=placeholder
bailian-video
```

Options:

| Option          | Default     | Meaning                               |
|-----------------|-------------|---------------------------------------|
| `--host`        | `0.0.0.0`   | Address to listen on                  |
| `--port`        | `8082`      | Port to listen on                     |
| `--db`          | `bailian.db`| SQLite database file                  |
| `--static-dir`  | `static`    | Directory of static pages (created if missing) |
| `--uploads-dir` | `uploads`   | Directory served under `/uploads/`    |

If `DASHSCOPE_API_KEY` is not set, the service logs a warning and starts
anyway. Calls to DashScope will then fail, and tasks end up `failed`.

## HTTP API

| Method | Path                        | Purpose                            |
|--------|-----------------------------|------------------------------------|
| POST   | `/api/video/create`         | Create a task; returns `task_id` and `status: "pending"` |
| GET    | `/api/video/status/<id>`    | Task status, DashScope task and request ids, video URL, error |
| GET    | `/api/video/detail/<id>`    | Full stored task record under `data` |
| GET    | `/api/video/history`        | Paged list, newest first, with query parameters `page` (default 1), `page_size` (default 10), `task_type` and `status` |
| DELETE | `/api/video/<id>`           | Delete a task (also succeeds if the id does not exist) |
| GET    | `/health`                   | Health check                       |

Errors come back as JSON `{"error": "..."}`, with one of these status codes:

- 400 for invalid input or an invalid id.
- 404 for an unknown task.
- 500 for a storage failure.

Deletion is soft: the record is marked deleted and is hidden from every query
after that. Responses carry permissive CORS headers, and `OPTIONS` preflight
requests are answered directly.

The service also has the following file routes:

- `/static/<file>` serves files from the static directory.
- `/uploads/<file>` serves files from the uploads directory.
- `/`, `/video-generation`, `/history` and `/task-detail/<id>` serve
  `index.html`, `video-generation.html`, `history.html` and `task-detail.html`
  from the static directory.

### Task types and models

- `i2v-first-frame`: image to video with `wanx2.1-i2v-turbo` or
  `wanx2.1-i2v-plus`. Requires `image_url`.
- `i2v-keyframes`: first and last frame with `wanx2.1-i2v-plus` only. Requires
  `image_url` and `end_image_url`.
- `t2v`: text to video with `wanx2.1-t2v-turbo` or `wanx2.1-t2v-plus`.
- `image_reference`: `wanx2.1-vace-plus` with 1–3 `ref_images_url`. The
  optional `obj_or_bg` list must have one entry per image and may contain at
  most one `bg`.
- `video_repainting`: `wanx2.1-vace-plus` with `video_url` and a
  `control_condition`.
  - The condition is one of `posebodyface`, `posebody`, `depth` or `scribble`.
  - The optional `strength` must be in 0.0–1.0 and defaults to 1.0.
  - At most one reference image is allowed.

`task_type`, `model` and `prompt` are required.

Other limits and defaults:

- Prompts may be up to 800 characters long.
- Duration is always 5 seconds.
- The resolution defaults to `720P`.
- Turbo models accept `480P` or `720P`. The plus i2v and t2v models accept
  `720P` only.
- `wanx2.1-vace-plus` accepts `1280*720`, `720*1280`, `960*960`, `832*1088` and
  `1088*832`, and these values are also used as the size.
- For the other models, `480P` maps to size `832*480` and `720P` to `1280*720`,
  unless `size` is given.
- A `seed`, if given, must be in the range 0–2147483647.
- `prompt_extend` and `watermark` are optional booleans and are passed through
  to DashScope.

Example:

```
curl -X POST http://localhost:8082/api/video/create \
  -H 'Content-Type: application/json' \
  -d '{"task_type": "t2v", "model": "wanx2.1-t2v-turbo", "prompt": "a cat running on grass"}'
```

## Using it as a library

The package is built from the following pieces:

- `bailian_video.models`
  - `TaskRequest`: a stored record, with `to_dict()`.
  - `VideoCreateRequest.from_dict()`: builds a request and raises `ValueError`
    on bad input.
  - `TaskStore`: thread-safe SQLite storage with `create`, `get`, `update`,
    `delete`, `count`, `list` and `close`. It can also be used as a context
    manager.
- `bailian_video.dashscope`
  - `build_task_payload()`: builds the request body sent to DashScope.
  - `DashScopeService`: has `create_video_generation_task`, `get_task_status`
    and `poll_task_status`. Failures raise `DashScopeError`.
- `bailian_video.handlers`
  - `validate_create_request()`: checks a request and fills in its defaults.
  - `VideoHandler`: the task operations. Errors raise `HandlerError`, which
    carries `status` and `message`.
- `bailian_video.app`
  - `create_app()`: builds the Flask application.
  - `main()`: the `bailian-video` command.

```python
from bailian_video.models import TaskStore
from bailian_video.dashscope import DashScopeService
from bailian_video.handlers import VideoHandler
from bailian_video.app import create_app

store = TaskStore("bailian.db")
handler = VideoHandler(store, DashScopeService(api_key="placeholder"))
app = create_app(handler, "static", "uploads")
```

## What it does not include

The package ships no HTML pages and no upload endpoint. The page routes and
`/uploads/` only serve files that you place in the static and uploads
directories yourself. Without those files, the page routes answer 404.

Task processing runs in threads inside the server process. A task that is still
running when the server stops is not resumed.