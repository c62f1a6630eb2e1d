"""Streaming relay to an OpenAI-compatible chat-completions endpoint.

Opens one upstream request per client request and hands back the upstream
body as an async byte iterator. Chunks are yielded in arrival order, with
no parsing of the Server-Sent-Events framing. Failures while opening the
stream are raised as UpstreamError before any byte reaches the client.
"""

import logging
from typing import AsyncIterator, List, Optional, Sequence

import httpx

from chat_relay.config import UpstreamConfig
from chat_relay.models import ChatMessage, UpstreamPayload

logger = logging.getLogger("chat_relay")

SYSTEM_PROMPT = """
You are a helpful, honest assistant for a personal website.
- Be accurate and clear; ask for missing context if needed.
- Be creative when asked to brainstorm or write.
- Refuse requests that could meaningfully enable illegal, dangerous, or privacy-invasive actions.
- If refusing, explain briefly and suggest a safer alternative.
"""


class UpstreamError(Exception):
    """Raised when the upstream stream cannot be opened."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


def build_payload(
    conversation: Sequence[ChatMessage],
    system_prompt: str,
    model: str,
    temperature: float,
) -> UpstreamPayload:
    """Prepend the system preamble to the conversation and wrap it for upstream."""
    messages: List[ChatMessage] = [ChatMessage(role="system", content=system_prompt)]
    messages.extend(conversation)
    return UpstreamPayload(model=model, messages=messages, temperature=temperature)


class UpstreamStream:
    """An open upstream response whose body is relayed as raw bytes."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._closed = False
        self.bytes_relayed = 0
        self.completed = False
        self.error: Optional[str] = None

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def is_closed(self) -> bool:
        return self._closed and self._response.is_closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield upstream chunks until end-of-stream, then close.

        A read error ends the iteration after logging it; headers have
        already been sent, so the only remedy is closing the connection.
        If the consumer stops early, the upstream connection is released.
        """
        try:
            async for chunk in self._response.aiter_bytes():
                self.bytes_relayed += len(chunk)
                yield chunk
            self.completed = True
        except httpx.HTTPError as exc:
            self.error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Upstream stream interrupted after %d bytes: %s",
                self.bytes_relayed,
                self.error,
            )
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the upstream response and its client (idempotent)."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class StreamRelay:
    """Opens streaming chat completions against the configured upstream."""

    def __init__(
        self,
        upstream: UpstreamConfig,
        system_prompt: str = SYSTEM_PROMPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.upstream = upstream
        self.system_prompt = system_prompt
        self._transport = transport

    def build_payload(self, conversation: Sequence[ChatMessage]) -> UpstreamPayload:
        return build_payload(
            conversation,
            self.system_prompt,
            self.upstream.model,
            self.upstream.temperature,
        )

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.upstream.read_timeout, connect=self.upstream.connect_timeout
        )
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def open(
        self, conversation: Sequence[ChatMessage], api_key: str
    ) -> UpstreamStream:
        """Send the conversation upstream and return the open response stream.

        Args:
            conversation: Client-supplied messages, in client order.
            api_key: Bearer token for the upstream service.

        Returns:
            An UpstreamStream positioned at the start of the body.

        Raises:
            UpstreamError: If the connection fails or the upstream answers
                with a non-2xx status. The detail carries the upstream's
                error text.
        """
        payload = self.build_payload(conversation)
        headers = {
            "Authorization": "Bearer {}".format(api_key),
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

        client = self._client()
        try:
            request = client.build_request(
                "POST",
                self.upstream.completions_url,
                json=payload.model_dump(),
                headers=headers,
            )
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise UpstreamError(str(exc) or exc.__class__.__name__)
        except BaseException:
            await client.aclose()
            raise

        if not response.is_success:
            try:
                await response.aread()
                detail = response.text
            except httpx.HTTPError as exc:
                detail = str(exc) or exc.__class__.__name__
            finally:
                await response.aclose()
                await client.aclose()
            raise UpstreamError(detail, status_code=response.status_code)

        return UpstreamStream(client, response)
