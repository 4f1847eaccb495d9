"""Web search tool backed by SearxNG instances."""

import re
from typing import Any

import httpx

from toolstream.config import get_config
from toolstream.exceptions import ToolExecutionError
from toolstream.logging import get_logger
from toolstream.tools.registry import Tool

log = get_logger(__name__)

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7",
    "Cache-Control": "no-cache",
}


class SearxSearchTool(Tool):
    """Search the web through the configured SearxNG instances, in order."""

    name = "search_searx"
    description = "Search the web using SearxNG instances to get recent and relevant information"
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query"},
            "num_results": {"type": "number", "description": "Number of results to return"},
        },
        "required": ["query", "num_results"],
        "additionalProperties": False,
    }

    def __init__(self, instances: list[str] | None = None):
        self._instances = instances
        self.client = httpx.AsyncClient(follow_redirects=True, headers=_HEADERS)

    @staticmethod
    def _clean_text(value: str, max_chars: int = 500) -> str:
        """Normalize whitespace and bound output size."""
        cleaned = re.sub(r"\s+", " ", (value or "")).strip()
        if len(cleaned) <= max_chars:
            return cleaned
        return cleaned[:max_chars].rstrip() + "... [truncated]"

    async def execute(self, query: str = "", num_results: int | None = None, **kwargs: Any) -> list[dict[str, Any]]:
        """Return ``[{title, url, category, content, time}]`` from the first instance that answers."""
        q = (query or "").strip()
        if not q:
            raise ToolExecutionError(self.name, "Missing required query")

        searx_cfg = get_config().tools.searx
        instances = self._instances or list(searx_cfg.instances)
        limit = searx_cfg.max_results if num_results is None else int(num_results)
        limit = max(1, limit)

        last_error: Exception | None = None
        for base_url in instances:
            url = f"{base_url.rstrip('/')}/search"
            try:
                log.debug("Querying SearxNG", instance=base_url, query=q)
                response = await self.client.get(
                    url,
                    params={"q": q, "format": "json", "language": searx_cfg.language},
                    timeout=searx_cfg.timeout,
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                log.warning("SearxNG instance failed", instance=base_url, error=str(e))
                last_error = e
                continue

            raw_results = payload.get("results", []) if isinstance(payload, dict) else []
            results = [
                {
                    "title": self._clean_text(str(item.get("title") or ""), max_chars=180),
                    "url": str(item.get("url") or ""),
                    "category": str(item.get("category") or ""),
                    "content": self._clean_text(str(item.get("content") or "")),
                    "time": item.get("publishedDate") or item.get("time"),
                }
                for item in raw_results[:limit]
                if isinstance(item, dict)
            ]
            log.info("SearxNG search succeeded", instance=base_url, results=len(results))
            return results

        detail = str(last_error) if last_error else "no instances configured"
        raise ToolExecutionError(self.name, f"All SearxNG instances failed: {detail}")

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()
