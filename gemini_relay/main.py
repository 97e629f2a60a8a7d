import sys
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AccessGate
from .config_manager import (HOST, LOG_LEVEL, MAX_RETRIES, PORT, UPSTREAM_TIMEOUT,
                             init_access_key, load_pool_config)
from .proxy import RetryOrchestrator, proxy_router
from .utils import AuthenticationError, ConfigError, RotationPool, format_log_message, setup_logging

logger = logging.getLogger("gemini_relay")


def show_banner(pool: RotationPool, access_key: str, port: int = PORT):
    lines = [
        "======================================================",
        "      Gemini 代理服务已启动 (智能重试版)",
        "======================================================",
        f"API 接口地址: http://127.0.0.1:{port}/v1",
        f"您固定的访问密钥: {access_key}",
        f"正在使用的上游服务: {', '.join(pool.upstreams)}",
    ]
    for line in lines:
        logger.info(line)
    pool.show_all()


def install_state(app: FastAPI, pool: RotationPool, access_key: str,
                  client_factory: Callable[..., httpx.AsyncClient], max_retries: int):
    app.state.pool = pool
    app.state.access_gate = AccessGate(access_key)
    app.state.orchestrator = RetryOrchestrator(pool, client_factory=client_factory,
                                               max_retries=max_retries, timeout=UPSTREAM_TIMEOUT)


def create_app(pool: Optional[RotationPool] = None, access_key: Optional[str] = None,
               client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
               max_retries: int = MAX_RETRIES) -> FastAPI:
    """
    创建密钥池前端服务。未传入 pool / access_key 时在启动阶段从配置文件加载。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not hasattr(app.state, 'orchestrator'):
            api_keys, upstreams = load_pool_config()
            loaded_pool = RotationPool(api_keys, upstreams)
            loaded_key = init_access_key()
            install_state(app, loaded_pool, loaded_key, client_factory, max_retries)
            show_banner(loaded_pool, loaded_key)
        yield

    app = FastAPI(title="Gemini Key Pool", lifespan=lifespan)
    if pool is not None and access_key is not None:
        install_state(app, pool, access_key, client_factory, max_retries)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(proxy_router)

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED,
                            content={"error": {"message": exc.message, "code": "invalid_api_key"}})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        # 未匹配的路径和方法同样返回统一的错误结构
        return JSONResponse(status_code=exc.status_code,
                            content={"error": {"message": str(exc.detail), "code": exc.status_code}},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(format_log_message('ERROR', f"Unhandled exception: {exc}", extra={'status_code': 500, 'error_message': str(exc)}))
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"error": {"message": str(exc), "code": "internal_error"}})

    return app


def run():
    setup_logging(LOG_LEVEL)
    try:
        api_keys, upstreams = load_pool_config()
        access_key = init_access_key()
    except ConfigError as e:
        logger.error(format_log_message('ERROR', f"启动过程中发生严重错误: {e}", extra={'request_type': 'startup'}))
        sys.exit(1)

    pool = RotationPool(api_keys, upstreams)
    app = create_app(pool=pool, access_key=access_key)
    show_banner(pool, access_key)
    uvicorn.run(app, host=HOST, port=PORT, log_level="warning")


app = create_app()

if __name__ == "__main__":
    run()
