"""
OpenAI → Gemini 边缘转换网关。

只提供 /v1/chat/completions：请求体转换成 Gemini 格式后调用一次 Gemini API，
Authorization 里的 Bearer 令牌直接作为 Gemini API 密钥使用。
"""
import logging
from typing import Callable, Dict, Optional

import httpx
import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .auth import bearer_token
from .config_manager import DEFAULT_MODEL, GATEWAY_HOST, GATEWAY_PORT, GEMINI_API_ENDPOINT, LOG_LEVEL, UPSTREAM_TIMEOUT
from .gemini import GeminiClient, StreamTranscoder, convert_request, to_openai_response
from .models import ChatCompletionRequest, ErrorResponse
from .utils import GeminiAPIError, format_log_message, mask_key, setup_logging

logger = logging.getLogger('gemini_relay')

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

gateway_router = APIRouter()


def cors_headers(additional: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Methods': 'GET, HEAD, POST, OPTIONS',
        'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    }
    if additional:
        headers.update(additional)
    return headers


def error_response(message: str, status_code: int) -> JSONResponse:
    error = ErrorResponse(message=message, type="proxy_error", code=status_code)
    return JSONResponse(status_code=status_code, content={"error": error.model_dump()}, headers=cors_headers())


@gateway_router.get("/health")
async def health():
    return JSONResponse(content={"status": "ok"}, headers=cors_headers())


@gateway_router.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"])
async def gateway_request(full_path: str, request: Request):
    # CORS 预检请求只返回头部
    if request.method == "OPTIONS":
        return Response(headers=cors_headers())

    if f"/{full_path}" != CHAT_COMPLETIONS_PATH:
        return error_response(f"Endpoint not found. Please use {CHAT_COMPLETIONS_PATH}.", 404)

    api_key = bearer_token(request.headers.get("Authorization"))
    if not api_key:
        return error_response("Authorization header is missing or invalid.", 401)

    try:
        chat_request = ChatCompletionRequest.model_validate(await request.json())
    except ValueError as e:
        logger.warning(format_log_message('WARNING', f"无法解析请求体: {e}", extra={'status_code': 400}))
        return error_response(f"Invalid request body: {e}", 400)

    model = chat_request.model or DEFAULT_MODEL
    request_type = 'stream' if chat_request.stream else 'non-stream'
    logger.info(format_log_message('INFO', f"请求 Gemini 模型 {model}，消息数: {len(chat_request.messages)}",
                                   extra={'key': mask_key(api_key), 'request_type': request_type}))

    try:
        gemini_request = convert_request(chat_request)
        client = GeminiClient(api_key, base_url=request.app.state.api_endpoint,
                              client_factory=request.app.state.client_factory, timeout=UPSTREAM_TIMEOUT)
        if chat_request.stream:
            events = await client.stream_chat(model, gemini_request, StreamTranscoder(model))
            return StreamingResponse(events, media_type="text/event-stream", headers=cors_headers())

        data = await client.complete_chat(model, gemini_request)
        response = to_openai_response(data, model)
        return JSONResponse(content=response.model_dump(), headers=cors_headers())
    except GeminiAPIError as e:
        return error_response(e.message, e.status_code)
    except Exception as e:
        logger.error(format_log_message('ERROR', f"Gateway error: {e}", extra={'request_type': request_type, 'status_code': 500}))
        return error_response(str(e), 500)


def create_app(client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
               api_endpoint: str = GEMINI_API_ENDPOINT) -> FastAPI:
    app = FastAPI(title="OpenAI to Gemini Gateway")
    app.state.client_factory = client_factory
    app.state.api_endpoint = api_endpoint
    app.include_router(gateway_router)

    @app.exception_handler(GeminiAPIError)
    async def gemini_error_handler(request: Request, exc: GeminiAPIError):
        return error_response(exc.message, exc.status_code)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(format_log_message('ERROR', f"Unhandled exception: {exc}", extra={'status_code': 500, 'error_message': str(exc)}))
        return error_response(str(exc), 500)

    return app


def run():
    setup_logging(LOG_LEVEL)
    logger.info(format_log_message('INFO', f"OpenAI → Gemini 网关已启动: http://{GATEWAY_HOST}:{GATEWAY_PORT}{CHAT_COMPLETIONS_PATH}", extra={'request_type': 'startup'}))
    uvicorn.run(app, host=GATEWAY_HOST, port=GATEWAY_PORT, log_level="warning")


app = create_app()

if __name__ == "__main__":
    run()
