# leadbot/clients/http.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

import aiohttp

HttpResult = Tuple[bool, Optional[int], Any, Optional[str]]


async def request_json(
    method: str,
    url: str,
    *,
    json: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10,
) -> HttpResult:
    """
    Send one JSON request.
    Returns (success, http_status, body, error_message). Never raises for
    transport failures.
    """
    request_headers = {
        "Content-Type": "application/json",
        "User-Agent": "leadbot/1.0",
    }
    if headers:
        request_headers.update(headers)

    try:
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                json=json,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                status = response.status
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = await response.text()

                if 200 <= status < 300:
                    return (True, status, body, None)
                return (False, status, body, f"HTTP {status}: {str(body)[:200]}")
    except asyncio.TimeoutError:
        return (False, None, None, "Request timeout")
    except aiohttp.ClientError as e:
        return (False, None, None, f"Client error: {str(e)[:200]}")
