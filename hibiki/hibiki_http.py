import asyncio
from typing import Optional, Dict, Any, Tuple, Union
import httpx


async def http_request(method: str, url: str, *, config: Optional[Dict] = None,
                       data: Optional[Union[str, bytes]] = None) -> Tuple[int, bytes, Dict[str, str]]:
    """
    Core HTTP helper.

    Returns (status: int, content: bytes, headers: dict[str, str]) with header
    keys lower-cased. Status codes are not interpreted here; callers decide
    what a non-2xx response means. Transport failures are retried `retries`
    times with exponential backoff before the last error is raised.

    config keys: timeout, retries, backoff, headers, params.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 0))
    backoff = float(cfg.pop('backoff', 0.2))
    headers = dict(cfg.pop('headers', {}))
    params = dict(cfg.pop('params', {}))

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                body = (data.encode('utf-8') if isinstance(data, str) else data) if data is not None else None
                if body is not None:
                    headers = {**headers}
                    headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=headers,
                    params=params,
                    content=body,
                )
                headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                return (int(resp.status_code), resp.content, headers_map)
            except Exception as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc


def content_type_of(headers: Dict[str, Any]) -> Optional[str]:
    ct = headers.get("content-type")
    if ct is None:
        return None
    return str(ct).strip() or None
