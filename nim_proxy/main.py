from __future__ import annotations

import json
import logging
import secrets
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .logging_config import setup_logging
from .schemas.anthropic import ErrorResponse, MessagesRequest
from .streaming import StreamTranscoder, stream_response
from .transform import anthropic_to_openai_payload, openai_to_anthropic_response

setup_logging()
logger = logging.getLogger(__name__)

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None
# Summaries of recent requests for /_debug/last
_RECENT: deque = deque(maxlen=64)


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed: stay on HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


async def _close_httpx_client() -> None:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        await _HTTPX_CLIENT.aclose()
        _HTTPX_CLIENT = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize shared HTTP client eagerly to establish pools
    _get_httpx_client()
    yield
    await _close_httpx_client()


def _error_type_for_status(status: int) -> str:
    if status == 400:
        return "invalid_request_error"
    if status == 401:
        return "authentication_error"
    if status == 403:
        return "permission_error"
    if status == 404:
        return "not_found_error"
    if status == 429:
        return "rate_limit_error"
    return "api_error"


def _anthropic_error_for_status(status: int, message: str) -> Dict[str, Any]:
    return ErrorResponse(error={"type": _error_type_for_status(status), "message": message}).model_dump()


def _error_response(status: int, message: str, error_type: Optional[str] = None) -> JSONResponse:
    content = _anthropic_error_for_status(status, message)
    if error_type:
        content["error"]["type"] = error_type
    return JSONResponse(status_code=status, content=content)


def _upstream_error_message(body: bytes) -> str:
    text = body.decode("utf-8", errors="ignore") if body else ""
    try:
        data = json.loads(text) if text else {}
    except ValueError:
        return text
    if not isinstance(data, dict):
        return text
    err = data.get("error")
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return data.get("message") or (json.dumps(data, ensure_ascii=False) if data else text)


def _upstream_headers(stream: bool) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.upstream_api_key:
        headers["Authorization"] = f"Bearer {settings.upstream_api_key}"
    if stream:
        headers["Accept"] = "text/event-stream"
    return headers


def _redacted(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("<redacted>" if k.lower() in ("authorization", "x-api-key") else v) for k, v in headers.items()}


async def verify_auth(
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    authorization: str | None = Header(default=None, alias="authorization"),
) -> None:
    if not settings.auth_token:
        return
    token = x_api_key
    if not token and authorization:
        token = authorization[7:] if authorization.lower().startswith("bearer ") else authorization
    if not token or not secrets.compare_digest(token.encode(), settings.auth_token.encode()):
        raise StarletteHTTPException(status_code=401, detail="Invalid API key")


app = FastAPI(title="Claude-to-NIM Proxy", lifespan=lifespan, dependencies=[Depends(verify_auth)])

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-api-key", "anthropic-version"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
    if exc.status_code == 404 and message == "Not Found":
        message = "Not found"
    return JSONResponse(
        status_code=exc.status_code,
        content=_anthropic_error_for_status(exc.status_code, message),
        headers=getattr(exc, "headers", None),
    )


def _record_stream(transcoder: StreamTranscoder) -> None:
    _RECENT.append(
        {
            "phase": "stream_" + ("client_disconnected" if transcoder.client_disconnected else transcoder.state.value),
            "id": transcoder.message.id,
            "model": transcoder.model,
            "frames": transcoder.frames,
            "blocks": [b.type for b in transcoder.message.content],
            "stop_reason": transcoder.message.stop_reason,
            "usage": transcoder.message.usage.model_dump(),
        }
    )


@app.post("/v1/messages")
async def messages(request: Request):
    try:
        body = await request.json()
    except Exception:
        return _error_response(400, "Invalid JSON body")
    try:
        parsed = MessagesRequest.model_validate(body)
    except ValidationError as e:
        return _error_response(400, str(e))

    oai_payload = anthropic_to_openai_payload(parsed.model_dump(exclude_none=True))
    is_stream = bool(oai_payload.get("stream"))
    url = settings.chat_completions_url
    headers = _upstream_headers(is_stream)
    rec: Dict[str, Any] = {"phase": "start", "request_model": parsed.model, "upstream_model": oai_payload.get("model")}
    if settings.debug:
        logger.debug(
            "upstream request: %s",
            json.dumps({"url": url, "headers": _redacted(headers), "stream": is_stream, "model": oai_payload.get("model")}),
        )

    client = _get_httpx_client()
    timeout = httpx.Timeout(settings.upstream_timeout)

    if not is_stream:
        try:
            resp = await client.post(url, json=oai_payload, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            logger.error("upstream request failed: %s: %s", type(e).__name__, e)
            rec.update({"phase": "upstream_error", "message": str(e)})
            _RECENT.append(rec)
            return _error_response(502, f"Upstream error: {e}", "api_error")
        if resp.status_code >= 400:
            message = _upstream_error_message(resp.content)
            logger.warning("upstream returned %s: %.200s", resp.status_code, message)
            rec.update({"phase": "non_stream_error", "upstream_status": resp.status_code, "message": message})
            _RECENT.append(rec)
            return _error_response(resp.status_code, message)
        try:
            data = resp.json()
        except ValueError:
            return _error_response(502, "Upstream returned a non-JSON body", "api_error")
        rec["phase"] = "non_stream_ok"
        _RECENT.append(rec)
        return JSONResponse(content=openai_to_anthropic_response(data, requested_model=parsed.model))

    upstream_req = client.build_request("POST", url, json=oai_payload, headers=headers, timeout=timeout)
    try:
        upstream = await client.send(upstream_req, stream=True)
    except httpx.HTTPError as e:
        logger.error("upstream stream failed to open: %s: %s", type(e).__name__, e)
        rec.update({"phase": "upstream_error", "message": str(e)})
        _RECENT.append(rec)
        return _error_response(502, f"Upstream error: {e}", "api_error")
    if upstream.status_code >= 400:
        try:
            raw = await upstream.aread()
        finally:
            await upstream.aclose()
        message = _upstream_error_message(raw)
        logger.warning("upstream stream returned %s: %.200s", upstream.status_code, message)
        rec.update({"phase": "stream_error_status", "upstream_status": upstream.status_code, "message": message})
        _RECENT.append(rec)
        return _error_response(upstream.status_code, message)

    logger.debug("upstream stream opened, status %s", upstream.status_code)
    return stream_response(upstream, parsed.model, is_disconnected=request.is_disconnected, on_finish=_record_stream)


@app.get("/v1/models")
async def list_models():
    return {"data": [], "has_more": False, "first_id": None, "last_id": None}


@app.get("/health")
@app.get("/")
async def health():
    return {"status": "ok"}


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
