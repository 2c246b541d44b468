"""Shared router dependencies and response helpers."""

from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from services.errors import PipelineError, SchemaMissingError, truncate_message
from services.freshness import CacheBackend
from services.graph_client import GraphClient, open_graph_client


async def get_graph_client() -> AsyncGenerator[GraphClient, None]:
    """One Graph client (and HTTP connection pool) per request."""
    async with open_graph_client() as graph:
        yield graph


def get_trend_cache(request: Request) -> CacheBackend:
    return request.app.state.trend_cache


def camelize(value: Any) -> Any:
    """Recursively convert dict keys to camelCase for the wire."""
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


def to_wire(model: BaseModel) -> dict:
    return camelize(model.model_dump(mode="json"))


def failure_payload(error: PipelineError) -> dict:
    return {"ok": False, "error": error.code, "message": truncate_message(error.message)}


def schema_missing_response(error: SchemaMissingError) -> JSONResponse:
    """Missing tables need an operator, so they are not reported as a 200."""
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": f"missing_table_{error.table}",
            "message": truncate_message(error.message),
        },
    )
