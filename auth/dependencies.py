"""
auth/dependencies.py -- FastAPI glue between Starlette requests and the Guard.

Route handlers do not authenticate anything themselves. They build a
RequestContext from the incoming request and hand it to a handler produced by
Guard.protect():

    @router.get("/auth/me")
    def me(request: Request, guard: Guard = Depends(get_guard)):
        return guard.protect(_me, guard.require_member())(build_context(request))

get_guard and get_user_store are FastAPI dependencies that
read the process-wide objects wired onto app.state by the lifespan.

Layer rule: may import fastapi (this module is part of the DI system), never
from api/.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request

from auth.middleware import Guard, RequestContext
from auth.store import UserStore


def get_guard(request: Request) -> Guard:
    return request.app.state.guard


def get_user_store(request: Request) -> UserStore:
    return request.app.state.user_store


def build_context(request: Request, params: dict[str, Any] | None = None) -> RequestContext:
    """Snapshot the parts of a request that checks are allowed to see.

    params is the already-validated body (e.g. LoginRequest.model_dump());
    query parameters fill in any key the body does not set.
    """
    merged: dict[str, Any] = dict(request.query_params)
    if params:
        merged.update(params)
    return RequestContext(
        headers=request.headers,
        params=merged,
        path_params=dict(request.path_params),
        path_args=tuple(request.path_params.values()),
        client_host=request.client.host if request.client else None,
    )
