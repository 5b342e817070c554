"""HTTP/SSE transport: config lookup, adapter selection and the request itself."""

import asyncio
import codecs
import dataclasses
import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .cancellation import CancellationToken, is_cancelled
from .config import ConfigManager, ProviderConfig
from .errors import ChannelError, ConfigError, ErrorType
from .formatters import get_adapter
from .formatters.base import GenerateRequest, GenerateResponse, StreamChunk
from .logger import get_logger, truncate
from .messages import ToolDeclaration

_log = get_logger("channel")

POLL_INTERVAL = 0.3
CONNECT_TIMEOUT = 30.0


def _decode_body(raw: bytes) -> Any:
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def split_sse_data(buffer: str) -> Tuple[List[str], str]:
    """Take the complete lines off ``buffer``; return their ``data:`` payloads and the remainder.

    ``event:``/``id:`` lines and comments are skipped since every provider
    repeats the event type inside the JSON.
    """
    payloads = []
    while "\n" in buffer:
        line, buffer = buffer.split("\n", 1)
        line = line.strip()
        if line.startswith("data:"):
            payloads.append(line[5:].strip())
    return payloads, buffer


class Channel:
    """Sends one generate request for a named provider config.

    Tool declarations come from the local registry and the MCP bridge and
    are left out when the request asks for ``skip_tools``.
    """

    def __init__(
        self,
        configs: ConfigManager,
        tools=None,
        mcp=None,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.configs = configs
        self.tools = tools
        self.mcp = mcp
        self._http = client
        self.poll_interval = poll_interval

    def declarations(self) -> List[ToolDeclaration]:
        decls: List[ToolDeclaration] = []
        if self.tools is not None:
            decls.extend(self.tools.declarations())
        if self.mcp is not None:
            decls.extend(self.mcp.list_declarations())
        return decls

    async def _resolve(self, request: GenerateRequest, stream: bool):
        config = await self.configs.get_config(request.config_id)
        if config is None:
            raise ChannelError(ErrorType.CONFIG_ERROR, f"Config not found: {request.config_id}")
        if not config.enabled:
            raise ChannelError(ErrorType.CONFIG_ERROR, f"Config is disabled: {request.config_id}")
        try:
            config.validate()
        except ConfigError as e:
            raise ChannelError(ErrorType.CONFIG_ERROR, str(e)) from e
        config = dataclasses.replace(config, stream=stream)
        adapter = get_adapter(config.type)
        tools = [] if request.skip_tools else self.declarations()
        http_request = adapter.build_request(request, config, tools)
        _log.info(
            "request: config=%s type=%s model=%s url=%s messages=%d tools=%d stream=%s",
            config.id, config.type, request.model_override or config.model,
            http_request.url, len(request.history), len(tools), stream,
        )
        return config, adapter, http_request

    @asynccontextmanager
    async def _client(self, config: ProviderConfig):
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(config.timeout, connect=CONNECT_TIMEOUT)) as client:
            yield client

    @staticmethod
    def _raise_for_status(status: int, body: bytes):
        if status >= 400:
            raise ChannelError(ErrorType.API_ERROR, f"API request failed with status {status}", _decode_body(body))

    async def _await_cancellable(self, coro, token: Optional[CancellationToken]):
        """Await ``coro`` while polling ``token``; raises CANCELLED_ERROR when it fires."""
        task = asyncio.ensure_future(coro)
        while True:
            if is_cancelled(token):
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass
                raise ChannelError(ErrorType.CANCELLED_ERROR, "Request cancelled")
            done, _ = await asyncio.wait({task}, timeout=self.poll_interval)
            if done:
                return task.result()

    # ── Single-shot ──────────────────────────────────────────

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        config, adapter, http_request = await self._resolve(request, stream=False)
        t0 = time.time()
        try:
            async with self._client(config) as client:
                response = await self._await_cancellable(
                    client.request(
                        http_request.method,
                        http_request.url,
                        headers=http_request.headers,
                        json=http_request.body,
                        timeout=http_request.timeout,
                    ),
                    request.cancel_token,
                )
        except httpx.TimeoutException as e:
            raise ChannelError(ErrorType.TIMEOUT_ERROR, f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise ChannelError(ErrorType.NETWORK_ERROR, f"Network error: {type(e).__name__}: {e}") from e

        self._raise_for_status(response.status_code, response.content)
        data = _decode_body(response.content)
        if not isinstance(data, dict):
            raise ChannelError(ErrorType.PARSE_ERROR, "Response is not a JSON object", truncate(str(data), 500))
        result = adapter.parse_response(data)
        _log.info(
            "response: config=%s finish=%s parts=%d elapsed=%.1fs",
            config.id, result.finish_reason, len(result.content.parts), time.time() - t0,
        )
        return result

    # ── Streaming ────────────────────────────────────────────

    async def stream(self, request: GenerateRequest) -> AsyncIterator[StreamChunk]:
        """Yield normalised chunks until the provider closes the stream.

        Cancellation ends the iteration quietly; the caller decides what to
        keep from what it already received.
        """
        config, adapter, http_request = await self._resolve(request, stream=True)
        token = request.cancel_token
        t0 = time.time()
        chunks = 0
        try:
            async with self._client(config) as client:
                async with client.stream(
                    http_request.method,
                    http_request.url,
                    headers=http_request.headers,
                    json=http_request.body,
                    timeout=http_request.timeout,
                ) as response:
                    if response.status_code >= 400:
                        self._raise_for_status(response.status_code, await response.aread())

                    buffer = ""
                    # One decoder per response: a multibyte character may span reads.
                    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                    # Poll instead of ``async for`` so a cancel is noticed
                    # even while the server is silent.
                    reader = response.aiter_bytes().__aiter__()
                    pending: Optional[asyncio.Future] = None
                    while True:
                        if is_cancelled(token):
                            if pending is not None and not pending.done():
                                pending.cancel()
                                try:
                                    await pending
                                except (asyncio.CancelledError, StopAsyncIteration):
                                    pass
                            _log.info("stream cancelled: config=%s chunks=%d", config.id, chunks)
                            return

                        if pending is None:
                            pending = asyncio.ensure_future(reader.__anext__())
                        done, _ = await asyncio.wait({pending}, timeout=self.poll_interval)
                        if not done:
                            continue
                        try:
                            raw = pending.result()
                        except StopAsyncIteration:
                            break
                        pending = None

                        buffer += decoder.decode(raw)
                        payloads, buffer = split_sse_data(buffer)
                        for payload in payloads:
                            if not payload or payload == "[DONE]":
                                continue
                            try:
                                event: Dict[str, Any] = json.loads(payload)
                            except json.JSONDecodeError:
                                _log.warning("skipping undecodable SSE payload: %s", truncate(payload))
                                continue
                            chunks += 1
                            yield adapter.parse_stream_chunk(event)
        except httpx.TimeoutException as e:
            raise ChannelError(ErrorType.TIMEOUT_ERROR, f"Stream timed out: {e}") from e
        except httpx.RequestError as e:
            raise ChannelError(ErrorType.NETWORK_ERROR, f"Network error: {type(e).__name__}: {e}") from e

        _log.info("stream complete: config=%s chunks=%d elapsed=%.1fs", config.id, chunks, time.time() - t0)
