"""
FastAPI router for user endpoints.

Handlers only translate HTTP to repository calls. Repository failures are
rendered by `repo_error_handler`, registered on the app in `main.py`.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse

from . import schemas
from .repository import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    Conflict,
    Invalid,
    NotFound,
    RepoError,
    Unavailable,
    User,
    UserRepository,
)

router = APIRouter()

STATUS_BY_ERROR: dict[type[RepoError], int] = {
    Invalid: 422,
    NotFound: status.HTTP_404_NOT_FOUND,
    Conflict: status.HTTP_409_CONFLICT,
    Unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def repo_error_handler(_: Request, exc: Exception) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    body = schemas.ErrorResponse(
        error=getattr(exc, "code", "repo_error"),
        detail=getattr(exc, "message", "Request failed."),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def get_repository(request: Request) -> UserRepository:
    return request.app.state.users


def _to_response(user: User) -> schemas.UserResponse:
    return schemas.UserResponse(**user.to_dict())


@router.post("/users", status_code=status.HTTP_201_CREATED, response_model=schemas.UserResponse)
async def create_user(
    payload: schemas.UserCreateRequest,
    repo: UserRepository = Depends(get_repository),
) -> schemas.UserResponse:
    user = await repo.create(payload.name, payload.email)
    return _to_response(user)


@router.get("/users", response_model=schemas.UserListResponse)
async def list_users(
    limit: int = Query(DEFAULT_LIST_LIMIT),
    offset: int = Query(0),
    repo: UserRepository = Depends(get_repository),
) -> schemas.UserListResponse:
    """
    Newest first. `limit` above the server cap is silently reduced.
    """
    users = await repo.list(limit=limit, offset=offset)
    total = await repo.count()
    return schemas.UserListResponse(
        users=[_to_response(u) for u in users],
        limit=min(limit, MAX_LIST_LIMIT),
        offset=offset,
        count=len(users),
        total=total,
    )


@router.get("/users/{user_id}", response_model=schemas.UserResponse)
async def get_user(
    user_id: int,
    repo: UserRepository = Depends(get_repository),
) -> schemas.UserResponse:
    return _to_response(await repo.get(user_id))


@router.patch("/users/{user_id}", response_model=schemas.UserResponse)
async def update_user(
    user_id: int,
    payload: schemas.UserUpdateRequest,
    repo: UserRepository = Depends(get_repository),
) -> schemas.UserResponse:
    user = await repo.update(user_id, name=payload.name, email=payload.email)
    return _to_response(user)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: int,
    repo: UserRepository = Depends(get_repository),
) -> Response:
    await repo.delete(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
