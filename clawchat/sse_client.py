"""Minimal text/event-stream reader on top of httpx streaming responses."""
import json
import logging
from typing import AsyncIterator

import httpx

logger = logging.getLogger(__name__)


async def iter_sse(client: httpx.AsyncClient, path: str = "/api/events") -> AsyncIterator[dict]:
    """
    Yield each JSON `data:` event of the stream at `path`. Comment frames
    (heartbeats) and `retry:` hints are skipped. Returns when the server closes
    the stream; transport errors propagate.
    """
    async with client.stream("GET", path, timeout=httpx.Timeout(None, connect=10.0)) as res:
        res.raise_for_status()
        data_lines: list[str] = []
        async for line in res.aiter_lines():
            if line == "":
                if data_lines:
                    payload = "\n".join(data_lines)
                    data_lines = []
                    try:
                        yield json.loads(payload)
                    except json.JSONDecodeError:
                        logger.warning(f"SSE parse error: {payload[:200]}")
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if field == "data":
                data_lines.append(value[1:] if value.startswith(" ") else value)
