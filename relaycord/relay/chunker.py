from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

DISCORD_SAFE_LIMIT = 1900  # margin under Discord's 2000-character cap
CHUNK_DELAY_SECONDS = 0.2
MIN_BREAK_RATIO = 0.6

SendFn = Callable[[str], Awaitable[Any]]


def chunk_text(text: str, limit: int = DISCORD_SAFE_LIMIT) -> list[str]:
    """
    Split text into pieces of at most `limit` characters.

    Inside each window the cut moves back to just after the last newline, but
    only when that newline lies past 60% of the window; otherwise the window is
    cut as-is. Joining the result gives back the input exactly.
    """
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")

    chunks: list[str] = []
    i = 0
    while i < len(text):
        end = min(i + limit, len(text))
        if end < len(text):
            last_newline = text.rfind("\n", i, end)
            if last_newline - i > int(limit * MIN_BREAK_RATIO):
                end = last_newline + 1
        chunks.append(text[i:end])
        i = end
    return chunks


async def send_chunks(
    chunks: list[str],
    send: SendFn,
    reply: Optional[SendFn] = None,
    delay: float = CHUNK_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[Any]:
    """
    Deliver chunks strictly in order.

    The first chunk goes through `reply` when given, otherwise `send`; every
    later chunk goes through `send` after `delay` seconds. The first failure
    stops delivery and propagates; chunks already sent stay sent.
    """
    sent: list[Any] = []
    for idx, chunk in enumerate(chunks):
        if idx == 0:
            sent.append(await (reply or send)(chunk))
            continue
        await sleep(delay)
        sent.append(await send(chunk))
    return sent
