"""Content negotiation: accept markdown (with YAML frontmatter) or JSON."""

from __future__ import annotations

import json

import frontmatter
from fastapi import Request, Response
from pydantic import BaseModel


async def parse_body(request: Request) -> dict:
    """Parse request body as JSON or markdown with YAML frontmatter."""
    content_type = request.headers.get("content-type", "")
    raw = await request.body()
    text = raw.decode("utf-8").strip()

    if not text:
        return {}

    if "application/json" in content_type:
        return json.loads(text)

    # Try JSON first, but only if it looks like JSON and content-type isn't explicitly markdown
    if text.startswith("{") and "text/markdown" not in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

    # Markdown: fields in frontmatter, free text in the body becomes the note
    post = frontmatter.loads(text)
    result = dict(post.metadata)
    if post.content.strip():
        result["note"] = post.content.strip()
    return result


def wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/json" in accept


def render_response(
    request: Request,
    data: dict | BaseModel,
    status_code: int = 200,
    headers: dict | None = None,
) -> Response:
    """Return JSON or markdown based on Accept header."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", exclude_none=True)

    if wants_json(request):
        return Response(
            content=json.dumps(data, indent=2),
            status_code=status_code,
            media_type="application/json",
            headers=headers,
        )

    # Copy before mutating so callers' dicts are not affected
    data = dict(data)
    body = data.pop("message", "")
    fm = frontmatter.Post(body, **data)
    return Response(
        content=frontmatter.dumps(fm),
        status_code=status_code,
        media_type="text/markdown",
        headers=headers,
    )


def render_task(request: Request, task: dict, status_code: int = 200) -> Response:
    """Render a task with its status mirrored into headers."""
    headers = {"X-Task-Id": task["id"], "X-Status": task["status"]}
    settlement = task.get("settlement")
    if settlement:
        headers["X-Settlement-Status"] = settlement["status"]
    return render_response(request, task, status_code=status_code, headers=headers)
