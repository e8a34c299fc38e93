import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[str]]


class TavilyClient:
    def __init__(self, api_key: Optional[str], timeout: float = 60.0):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        allowed_topics = {"general", "news", "finance"}
        if topic:
            cleaned = str(topic).strip().lower()
            topic = cleaned if cleaned in allowed_topics else None
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
        }
        if topic:
            payload["topic"] = topic
        return await self._post("https://api.tavily.com/search", payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Tavily's dev keys expect the key in the JSON payload; keep the header as well.
            payload = {**payload, "api_key": self.api_key}
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolSet:
    tools: Dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        self.tools[tool.name] = tool

    def __bool__(self) -> bool:
        return bool(self.tools)

    def specs(self) -> List[Dict[str, Any]]:
        return [tool.spec() for tool in self.tools.values()]

    async def execute(self, name: str, arguments: Any) -> str:
        tool = self.tools.get(name)
        if tool is None:
            return f"Unknown tool: {name}"
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments or "{}")
            except ValueError:
                return f"Tool {name} received invalid JSON arguments."
        if not isinstance(arguments, dict):
            arguments = {}
        try:
            return await tool.handler(arguments)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return f"Tool {name} failed: {exc}"


def format_search_results(response: Dict[str, Any]) -> str:
    if response.get("error"):
        return f"Web search failed: {response.get('error')}"
    results = response.get("results") or []
    if not results:
        return "No results found."
    lines: List[str] = []
    for idx, item in enumerate(results, start=1):
        title = item.get("title") or item.get("url") or "Untitled"
        url = item.get("url") or ""
        snippet = (item.get("content") or "").strip()
        lines.append(f"{idx}. {title} ({url})\n{snippet}".rstrip())
    return "\n\n".join(lines)


def web_search_tool(tavily: TavilyClient, max_results: int = 5) -> Tool:
    async def handler(arguments: Dict[str, Any]) -> str:
        prompt = str(arguments.get("prompt") or arguments.get("query") or "").strip()
        if not prompt:
            return "Web search needs a non-empty prompt."
        response = await tavily.search(prompt, max_results=max_results)
        return format_search_results(response)

    return Tool(
        name="webSearch",
        description="Search the web for information",
        parameters={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "The prompt to search the web for"},
            },
            "required": ["prompt"],
        },
        handler=handler,
    )


def build_toolset(tavily: Optional[TavilyClient], max_results: int = 5) -> ToolSet:
    toolset = ToolSet()
    if tavily is not None and tavily.enabled:
        toolset.register(web_search_tool(tavily, max_results=max_results))
    return toolset
