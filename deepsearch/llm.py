import json
import re
from typing import Any, Dict, List, Optional, Protocol, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .errors import CompletionError, GenerationError
from .prompts import JSON_REPAIR_PROMPT, JSON_REPAIR_SYSTEM, STRUCTURED_OUTPUT_SUFFIX
from .providers import ModelProvider
from .schemas import ChatResult, ToolResult
from .tools import ToolSet

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ChatCompletionService(Protocol):
    async def chat(
        self,
        provider: ModelProvider,
        messages: List[Dict[str, Any]],
        tools: Optional[ToolSet] = None,
        stream: bool = False,
    ) -> ChatResult: ...


class StructuredGenerationService(Protocol):
    async def generate_object(
        self,
        provider: ModelProvider,
        *,
        system: str,
        prompt: str,
        schema: Type[ModelT],
    ) -> ModelT: ...


def _strip_fences(raw: str) -> str:
    text = (raw or "").strip()
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except ValueError:
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    val = val.get("message")
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except ValueError:
        pass
    return response.text


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            part.get("text") or "" for part in content if isinstance(part, dict)
        )
    if not content:
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return str(content)


class ProviderClient:
    """Chat completions and structured generation against OpenAI-compatible endpoints."""

    def __init__(
        self,
        timeout: float = 60.0,
        max_output_tokens: int = 5000,
        max_tool_steps: int = 10,
    ):
        self.client = httpx.AsyncClient(timeout=timeout)
        self.max_output_tokens = max_output_tokens
        self.max_tool_steps = max_tool_steps

    async def _post_chat(self, provider: ModelProvider, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not provider.available:
            raise CompletionError(
                f"Model provider '{provider.id}' is not available. API key might be missing."
            )
        url = f"{provider.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {provider.api_key}"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _extract_error_detail(exc.response)
            status = exc.response.status_code
            raise CompletionError(
                f"{provider.id} returned HTTP {status}: {_normalize_error_text(detail)}",
                status_code=status,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise CompletionError(f"{provider.id} request failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise CompletionError(f"{provider.id} returned a non-JSON response") from exc
        if not isinstance(data, dict) or not data.get("choices"):
            raise CompletionError(f"{provider.id} returned no choices")
        return data

    def _payload(self, provider: ModelProvider, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "model": provider.model,
            "messages": messages,
            "max_tokens": self.max_output_tokens,
            "stream": False,
        }

    async def chat(
        self,
        provider: ModelProvider,
        messages: List[Dict[str, Any]],
        tools: Optional[ToolSet] = None,
        stream: bool = False,
    ) -> ChatResult:
        if stream:
            raise CompletionError("Streaming completions are not supported here.")
        convo: List[Dict[str, Any]] = [{"role": "system", "content": provider.system_prompt}, *messages]
        tool_results: List[ToolResult] = []
        for _ in range(max(1, self.max_tool_steps)):
            payload = self._payload(provider, convo)
            if tools:
                payload["tools"] = tools.specs()
            data = await self._post_chat(provider, payload)
            message = data["choices"][0].get("message") or {}
            tool_calls = message.get("tool_calls") or []
            if not tool_calls or not tools:
                return ChatResult(text=_message_text(message), tool_results=tool_results, model=data.get("model"))
            convo.append({"role": "assistant", "content": message.get("content") or "", "tool_calls": tool_calls})
            for call in tool_calls:
                function = call.get("function") or {}
                name = function.get("name") or "unknown"
                result = await tools.execute(name, function.get("arguments"))
                tool_results.append(ToolResult(tool_name=name, result=result))
                convo.append({"role": "tool", "tool_call_id": call.get("id") or "", "content": result})
        # Tool budget spent; ask for a final answer without offering tools again.
        data = await self._post_chat(provider, self._payload(provider, convo))
        message = data["choices"][0].get("message") or {}
        return ChatResult(text=_message_text(message), tool_results=tool_results, model=data.get("model"))

    async def _complete_json(self, provider: ModelProvider, messages: List[Dict[str, Any]]) -> str:
        payload = self._payload(provider, messages)
        payload["response_format"] = {"type": "json_object"}
        try:
            data = await self._post_chat(provider, payload)
        except CompletionError as exc:
            raise GenerationError(str(exc)) from exc
        return _strip_fences(_message_text(data["choices"][0].get("message") or {}))

    async def generate_object(
        self,
        provider: ModelProvider,
        *,
        system: str,
        prompt: str,
        schema: Type[ModelT],
    ) -> ModelT:
        schema_json = json.dumps(schema.model_json_schema(), ensure_ascii=True)
        raw = await self._complete_json(
            provider,
            [
                {"role": "system", "content": system + STRUCTURED_OUTPUT_SUFFIX.format(schema=schema_json)},
                {"role": "user", "content": prompt},
            ],
        )
        try:
            return schema.model_validate_json(raw)
        except ValidationError as exc:
            first_error = exc
        repaired = await self._complete_json(
            provider,
            [
                {"role": "system", "content": JSON_REPAIR_SYSTEM},
                {
                    "role": "user",
                    "content": JSON_REPAIR_PROMPT.format(schema=schema_json, error=first_error, raw=raw),
                },
            ],
        )
        try:
            return schema.model_validate_json(repaired)
        except ValidationError as exc:
            raise GenerationError(
                f"{provider.id} returned output that does not match {schema.__name__}: {exc}"
            ) from exc

    async def close(self) -> None:
        await self.client.aclose()
