import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .auth import verify_access_key
from .config_manager import MAX_RETRIES, UPSTREAM_TIMEOUT
from .utils import RotationPool, format_log_message, mask_key

logger = logging.getLogger('gemini_relay')

proxy_router = APIRouter()

DEFAULT_ACCEPT = "application/json, text/event-stream"
USER_AGENT = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
              "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36")

# 不回传给客户端的响应头
EXCLUDED_RESPONSE_HEADERS = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailers', 'transfer-encoding', 'upgrade', 'content-length',
}


def build_target_url(upstream: str, path: str, query: str = "") -> str:
    # 上游地址已包含版本前缀，例如 https://example.workers.dev/v1
    target_url = f"{upstream.rstrip('/')}/{path.lstrip('/')}"
    if query:
        target_url += f"?{query}"
    return target_url


def relay_headers(headers: httpx.Headers, decoded: bool = False) -> List[Tuple[str, str]]:
    # 保留重复的响应头，例如多个 set-cookie
    excluded = (EXCLUDED_RESPONSE_HEADERS | {'content-encoding'}) if decoded else EXCLUDED_RESPONSE_HEADERS
    return [(name, value) for name, value in headers.multi_items() if name.lower() not in excluded]


def with_headers(response: Response, headers: Iterable[Tuple[str, str]]) -> Response:
    for name, value in headers:
        response.headers.append(name, value)
    return response


@dataclass
class UpstreamFailure:
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


class RetryOrchestrator:
    """
    按轮换池选择 (密钥, 上游) 转发请求，失败时推进游标后重试，最多 max_retries 次。

    - 429：只换密钥
    - 其他非 2xx 状态或连接失败：同时换密钥和上游
    - 2xx：立即把上游响应体流式返回给客户端，不再重试

    一旦开始向客户端回传响应体，本次尝试就不能再重试。
    """

    def __init__(self, pool: RotationPool,
                 client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
                 max_retries: int = MAX_RETRIES,
                 timeout: float = UPSTREAM_TIMEOUT):
        self.pool = pool
        self.client_factory = client_factory
        self.max_retries = max_retries
        self.timeout = timeout

    @staticmethod
    def build_headers(api_key: str, incoming: Mapping[str, str]) -> Dict[str, str]:
        return {
            'Content-Type': incoming.get('content-type') or 'application/json',
            'Accept': incoming.get('accept') or DEFAULT_ACCEPT,
            'Authorization': f"Bearer {api_key}",
            'User-Agent': USER_AGENT,
        }

    async def forward(self, method: str, path: str, query: str,
                      headers: Mapping[str, str], body: Optional[bytes]) -> Response:
        last_error: Optional[UpstreamFailure] = None

        for attempt in range(1, self.max_retries + 1):
            api_key, upstream = self.pool.current()
            target_url = build_target_url(upstream, path, query)
            extra_log = {'key': mask_key(api_key), 'upstream': upstream, 'attempt': f"{attempt}/{self.max_retries}"}
            logger.info(format_log_message('INFO', f"[尝试 {attempt}/{self.max_retries}] 转发请求至 {target_url}", extra=extra_log))

            client = self.client_factory(timeout=self.timeout)
            try:
                request = client.build_request(method, target_url, headers=self.build_headers(api_key, headers),
                                               content=body or None)
                response = await client.send(request, stream=True)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                await client.aclose()
                extra_log['error_message'] = str(e) or type(e).__name__
                logger.error(format_log_message('ERROR', f"无法连接到上游服务 {upstream}，切换下一个上游和 Key...", extra=extra_log))
                self.pool.advance_key()
                self.pool.advance_upstream()
                continue

            if response.is_success:
                extra_log['status_code'] = response.status_code
                logger.info(format_log_message('INFO', "上游响应成功，开始回传", extra=extra_log))
                return with_headers(
                    StreamingResponse(self._relay(client, response), status_code=response.status_code),
                    relay_headers(response.headers),
                )

            error_body = b""
            try:
                error_body = await response.aread()
            except httpx.HTTPError as e:
                logger.warning(format_log_message('WARNING', f"读取上游错误响应失败: {e}", extra=extra_log))
            finally:
                await response.aclose()
                await client.aclose()
            last_error = UpstreamFailure(response.status_code, relay_headers(response.headers, decoded=True), error_body)

            extra_log['status_code'] = response.status_code
            if response.status_code == 429:
                logger.warning(format_log_message('WARNING', f"Key {mask_key(api_key)} 达到速率限制，切换下一个 Key...", extra=extra_log))
                self.pool.advance_key()
            else:
                logger.error(format_log_message('ERROR', f"上游服务 {upstream} 返回错误 (状态码: {response.status_code})，切换下一个上游和 Key...", extra=extra_log))
                self.pool.advance_key()
                self.pool.advance_upstream()

        logger.error(format_log_message('ERROR', f"在尝试 {self.max_retries} 次后仍然失败。", extra={'status_code': last_error.status_code if last_error else 502}))
        if last_error is not None:
            return with_headers(Response(content=last_error.body, status_code=last_error.status_code), last_error.headers)
        return JSONResponse(
            status_code=502,
            content={"error": {"message": "代理服务在多次尝试后依然无法连接到任何上游服务。", "code": "upstream_unavailable"}},
        )

    async def _relay(self, client: httpx.AsyncClient, response: httpx.Response):
        try:
            if response.is_stream_consumed:
                # 响应体已被提前读取
                yield response.content
            else:
                async for chunk in response.aiter_raw():
                    yield chunk
        except httpx.HTTPError as e:
            logger.error(format_log_message('ERROR', f"回传上游响应时连接中断: {e}", extra={'status_code': response.status_code}))
        finally:
            await response.aclose()
            await client.aclose()


@proxy_router.api_route("/v1/{full_path:path}",
                        methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"],
                        dependencies=[Depends(verify_access_key)])
async def proxy_request(full_path: str, request: Request):
    """
    带重试的反向代理路由
    """
    orchestrator: RetryOrchestrator = request.app.state.orchestrator
    body = await request.body()
    return await orchestrator.forward(request.method, full_path, request.url.query, request.headers, body)
