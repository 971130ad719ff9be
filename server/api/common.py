"""Shared helpers for admin API routes."""

from __future__ import annotations

from typing import TypeVar

from fastapi import HTTPException, Request
from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict = {}


class ErrorBody(BaseModel):
    """Error payload carried in ``HTTPException.detail``: ``{"error": {...}}``."""
    error: ErrorDetail


class Page(BaseModel):
    items: list
    total: int
    page: int
    per_page: int
    total_pages: int


def api_error(status_code: int, code: str, message: str, **details) -> HTTPException:
    body = ErrorBody(error=ErrorDetail(code=code, message=message, details=details))
    return HTTPException(status_code=status_code, detail=body.model_dump())


def not_found(what: str, ident: str) -> HTTPException:
    return api_error(404, "NOT_FOUND", f"{what} not found: {ident}")


async def parse_body(request: Request, model: type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model``; 400 with every problem on failure."""
    try:
        body = await request.json()
    except ValueError:
        raise api_error(400, "VALIDATION_ERROR", "Request body must be valid JSON")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise api_error(400, "VALIDATION_ERROR", messages)


def paginate(items: list, total: int, page: int, per_page: int) -> dict:
    return Page(
        items=items,
        total=total,
        page=page,
        per_page=per_page,
        total_pages=(total + per_page - 1) // per_page if per_page > 0 else 0,
    ).model_dump()
