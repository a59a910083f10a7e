# http.py
# =============================================================================
# 适配器共用的 HTTP POST + 有限重试。
#
# 重试上限由调用方传入（端点配置已限制在 ≤ 1 次）；最后一次失败后抛出
# RuntimeError，由上层决定降级方式。
# =============================================================================

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

import httpx

logger = logging.getLogger(__name__)


async def post_json(
    endpoint: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    timeout: float,
    max_retries: int,
    label: str,
) -> Dict[str, Any]:
    """POST JSON 并返回解析后的响应体。

    Raises:
        RuntimeError: 所有尝试均失败。
    """
    attempts = max_retries + 1
    last_error: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(endpoint, headers=headers, json=body)
                response.raise_for_status()
                return response.json()

        except httpx.HTTPStatusError as e:
            last_error = e
            logger.warning(
                "%s 调用失败 (HTTP %d)，第 %d/%d 次: %s",
                label, e.response.status_code, attempt + 1, attempts,
                e.response.text[:200],
            )
        except httpx.RequestError as e:
            last_error = e
            logger.warning("%s 请求异常，第 %d/%d 次: %s", label, attempt + 1, attempts, e)
        except ValueError as e:
            # 响应体不是合法 JSON
            last_error = e
            logger.warning("%s 响应无法解析，第 %d/%d 次: %s", label, attempt + 1, attempts, e)

    raise RuntimeError(f"{label} 调用在 {attempts} 次尝试后仍失败: {last_error}")


def ensure_path_suffix(url: str, suffix: str) -> str:
    """URL 路径中不含 suffix 时追加；保留 query 参数。"""
    parsed = urlparse(url)
    path = parsed.path
    if suffix not in path:
        path = path.rstrip("/") + suffix
    return urlunparse(parsed._replace(path=path))
