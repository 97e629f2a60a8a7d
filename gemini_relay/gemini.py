import codecs
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from .config_manager import DEFAULT_MODEL, GEMINI_API_ENDPOINT, UPSTREAM_TIMEOUT
from .models import (ChatCompletionChunk, ChatCompletionRequest, ChatCompletionResponse,
                     Choice, ChunkChoice, ResponseMessage, Usage)
from .utils import GeminiAPIError, format_log_message, generate_random_alphanumeric, mask_key

logger = logging.getLogger('gemini_relay')


def extract_text(data: Any) -> str:
    """取 candidates[0].content.parts[0].text，链上任意一环缺失都返回空字符串。"""
    try:
        text = data['candidates'][0]['content']['parts'][0].get('text')
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return text if isinstance(text, str) else ""


def part_text(item: Dict[str, Any]) -> str:
    text = item.get('text')
    return text if isinstance(text, str) else ""


def message_text(content) -> str:
    if content is None:
        return ""
    if isinstance(content, list):
        # 多段内容只保留文本部分，非字符串的 text 按空处理
        return "".join(part_text(item) for item in content
                       if isinstance(item, dict) and item.get('type', 'text') == 'text')
    return str(content)


def convert_request(request: ChatCompletionRequest) -> Dict[str, Any]:
    """
    OpenAI Chat Completions 请求 → Gemini generateContent 请求。

    system 消息不会单独发出，而是作为一条 user 内容插在下一条 user 消息之前；
    连续多条 system 只保留最后一条，之后没有 user 消息的 system 会被丢弃。
    生成参数按真值判断复制，因此 temperature=0 之类的值不会转发。
    """
    generation_config = {}
    if request.max_tokens:
        generation_config['maxOutputTokens'] = request.max_tokens
    if request.temperature:
        generation_config['temperature'] = request.temperature
    if request.top_p:
        generation_config['topP'] = request.top_p
    if request.stop:
        generation_config['stopSequences'] = request.stop if isinstance(request.stop, list) else [request.stop]

    contents = []
    system_prompt = None
    for message in request.messages:
        text = message_text(message.content)
        if message.role == 'system':
            system_prompt = {"role": "user", "parts": [{"text": text}]}
            continue

        role = 'model' if message.role == 'assistant' else 'user'
        if system_prompt and role == 'user':
            contents.append(system_prompt)
            system_prompt = None

        contents.append({"role": role, "parts": [{"text": text}]})

    return {"contents": contents, "generationConfig": generation_config}


class ResponseWrapper:
    def __init__(self, data: Dict[Any, Any]):
        self._data = data
        self._text = extract_text(data)
        usage = data.get('usageMetadata') if isinstance(data, dict) else None
        if not isinstance(usage, dict):
            usage = {}
        self._prompt_token_count = usage.get('promptTokenCount') or 0
        self._candidates_token_count = usage.get('candidatesTokenCount') or 0
        self._total_token_count = usage.get('totalTokenCount') or 0

    @property
    def text(self) -> str:
        return self._text

    @property
    def prompt_token_count(self) -> int:
        return self._prompt_token_count

    @property
    def candidates_token_count(self) -> int:
        return self._candidates_token_count

    @property
    def total_token_count(self) -> int:
        return self._total_token_count


def new_completion_id() -> str:
    return f"chatcmpl-{generate_random_alphanumeric(12)}"


def to_openai_response(data: Dict[Any, Any], model: str) -> ChatCompletionResponse:
    # Gemini 自己的 finishReason 不透传，固定为 stop
    wrapper = ResponseWrapper(data)
    return ChatCompletionResponse(
        id=new_completion_id(),
        created=int(time.time()),
        model=model,
        choices=[Choice(index=0, message=ResponseMessage(role="assistant", content=wrapper.text), finish_reason="stop")],
        usage=Usage(
            prompt_tokens=wrapper.prompt_token_count,
            completion_tokens=wrapper.candidates_token_count,
            total_tokens=wrapper.total_token_count,
        ),
    )


class StreamTranscoder:
    """
    把 Gemini 的 SSE 字节流逐步转换成 OpenAI 的 chat.completion.chunk 事件。

    feed() 每次接收任意切分的字节，只输出已经完整的帧；finish() 在上游结束时调用，
    输出唯一的结束块和 [DONE]。整个流共用一个 id / created。
    """

    DELIMITER = "\n\n"

    def __init__(self, model: str = DEFAULT_MODEL, stream_id: Optional[str] = None, created: Optional[int] = None):
        self.model = model
        self.id = stream_id or new_completion_id()
        self.created = created or int(time.time())
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ""
        self._finished = False

    def feed(self, data: bytes) -> List[str]:
        if self._finished:
            return []
        self._buffer += self._decoder.decode(data)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events = []
        boundary = self._buffer.find(self.DELIMITER)
        while boundary != -1:
            frame = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(self.DELIMITER):]
            event = self._handle_frame(frame)
            if event:
                events.append(event)
            boundary = self._buffer.find(self.DELIMITER)
        return events

    def finish(self) -> List[str]:
        if self._finished:
            return []
        events = []
        self._buffer += self._decoder.decode(b"", final=True)
        # 最后一帧可能没有结尾空行
        event = self._handle_frame(self._buffer.replace("\r\n", "\n"))
        if event:
            events.append(event)
        self._buffer = ""
        self._finished = True
        events.append(self._format_event({}, "stop"))
        events.append("data: [DONE]\n\n")
        return events

    def _handle_frame(self, frame: str) -> Optional[str]:
        frame = frame.strip()
        if not frame:
            return None
        if frame.startswith("data:"):
            frame = frame[len("data:"):].lstrip(" ")
        try:
            chunk = json.loads(frame)
        except json.JSONDecodeError as e:
            logger.warning(format_log_message('WARNING', f"解析 Gemini 流数据块失败，已丢弃: {e}", extra={'request_type': 'stream'}))
            return None
        if isinstance(chunk, dict) and chunk.get('error'):
            logger.warning(format_log_message('WARNING', f"Gemini 流中返回错误: {chunk['error']}", extra={'request_type': 'stream'}))
        content = extract_text(chunk)
        if not content:
            return None
        return self._format_event({"content": content}, None)

    def _format_event(self, delta: Dict[str, str], finish_reason: Optional[str]) -> str:
        chunk = ChatCompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
        )
        return f"data: {chunk.model_dump_json()}\n\n"


def error_message_from(response: httpx.Response) -> str:
    try:
        error_data = response.json()
        message = error_data['error']['message']
        if message:
            return str(message)
    except (ValueError, KeyError, TypeError):
        pass
    return response.text or response.reason_phrase or f"Gemini API 返回状态码 {response.status_code}"


class GeminiClient:
    """对 Gemini generateContent / streamGenerateContent 的单次调用。"""

    def __init__(self, api_key: str, base_url: str = GEMINI_API_ENDPOINT,
                 client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
                 timeout: float = UPSTREAM_TIMEOUT):
        self.api_key = api_key
        self.base_url = base_url
        self.client_factory = client_factory
        self.timeout = timeout

    def build_url(self, model: str, stream: bool) -> str:
        if stream:
            return f"{self.base_url}{model}:streamGenerateContent?key={self.api_key}&alt=sse"
        return f"{self.base_url}{model}:generateContent?key={self.api_key}"

    async def complete_chat(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self.build_url(model, stream=False)
        async with self.client_factory(timeout=self.timeout) as client:
            try:
                response = await client.post(url, json=payload)
            except httpx.HTTPError as e:
                logger.error(format_log_message('ERROR', f"无法连接到 Gemini API: {e}", extra={'key': mask_key(self.api_key), 'request_type': 'non-stream'}))
                raise GeminiAPIError(f"Failed to reach Gemini API: {e}", 502)
            if not response.is_success:
                message = error_message_from(response)
                logger.error(format_log_message('ERROR', "Gemini API 返回错误", extra={'key': mask_key(self.api_key), 'request_type': 'non-stream', 'status_code': response.status_code, 'error_message': message}))
                raise GeminiAPIError(message, response.status_code)
            try:
                return response.json()
            except ValueError:
                logger.warning(format_log_message('WARNING', "Gemini 响应不是有效的 JSON，按空回复处理", extra={'request_type': 'non-stream'}))
                return {}

    async def stream_chat(self, model: str, payload: Dict[str, Any], transcoder: StreamTranscoder) -> AsyncIterator[bytes]:
        """
        发起流式请求并在返回前检查状态码，出错时直接抛出 GeminiAPIError；
        成功时返回一个异步生成器，逐块输出转换后的 OpenAI SSE 事件。
        """
        url = self.build_url(model, stream=True)
        client = self.client_factory(timeout=self.timeout)
        try:
            response = await client.send(client.build_request("POST", url, json=payload), stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(format_log_message('ERROR', f"无法连接到 Gemini API: {e}", extra={'key': mask_key(self.api_key), 'request_type': 'stream'}))
            raise GeminiAPIError(f"Failed to reach Gemini API: {e}", 502)

        if not response.is_success:
            try:
                await response.aread()
                message = error_message_from(response)
            finally:
                await response.aclose()
                await client.aclose()
            logger.error(format_log_message('ERROR', "Gemini API 返回错误", extra={'key': mask_key(self.api_key), 'request_type': 'stream', 'status_code': response.status_code, 'error_message': message}))
            raise GeminiAPIError(message, response.status_code)

        async def relay():
            try:
                try:
                    async for data in response.aiter_bytes():
                        for event in transcoder.feed(data):
                            yield event.encode('utf-8')
                except httpx.HTTPError as e:
                    logger.error(format_log_message('ERROR', f"读取 Gemini 流时连接中断: {e}", extra={'request_type': 'stream'}))
                for event in transcoder.finish():
                    yield event.encode('utf-8')
            finally:
                await response.aclose()
                await client.aclose()

        return relay()
