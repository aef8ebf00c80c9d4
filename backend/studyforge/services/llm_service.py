from __future__ import annotations

import base64
import json
import logging
import re
import time
from functools import lru_cache
from typing import Any, Dict, Iterable, List

import httpx
from jsonschema import validate, ValidationError
from pydantic import BaseModel

from studyforge.core.config import settings
from studyforge.core.errors import GenerationError
from studyforge.core.json_schema import GENERATION_OUTPUT_SCHEMA, MIND_MAP_SCHEMA
from studyforge.core.schemas import ChunkResult, MindMap
from studyforge.services.pdf_service import chunk_to_markdown
from studyforge.services.prompt_strategy import build_mind_map_prompt

logger = logging.getLogger(__name__)

# 429 限流时的传输层重试次数（不会因为结果为空而重试）
MAX_TRANSPORT_RETRIES = 2


class LLMConfig(BaseModel):
    provider: str = "openai"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None


# aiModel 档位 -> 实际模型名
def resolve_model(ai_model: str | None) -> str:
    provider = settings.llm_provider.lower()
    if provider == "gemini":
        return settings.gemini_model
    if (ai_model or "").lower() == "advanced":
        return settings.llm_advanced_model
    return settings.llm_model


def resolve_config(ai_model: str | None) -> LLMConfig:
    provider = settings.llm_provider.lower()
    if provider == "gemini":
        return LLMConfig(provider="gemini", model=resolve_model(ai_model), api_key=settings.gemini_api_key)
    return LLMConfig(
        provider=provider,
        model=resolve_model(ai_model),
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
    )


# 当没有配置 API Key 时，从 chunk 文本构造最小可运行结果
def _stub_result(text: str) -> Dict[str, Any]:
    seed = re.findall(r"[A-Za-z0-9一-鿿]{4,}", text)
    if not seed:
        return {"summary": "", "category": "general", "flashcards": [], "mcqs": [], "frqs": []}
    terms = list(dict.fromkeys(word[:40] for word in seed))[:5]
    return {
        "summary": " ".join(terms),
        "category": "general",
        "flashcards": [
            {"front": f"What is {term}?", "back": f"{term} appears in this section.", "topic": term}
            for term in terms
        ],
        "mcqs": [],
        "frqs": [],
    }


def _strip_json_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1]
    return text


def _extract_error_message(payload: str) -> str:
    try:
        data = json.loads(payload)
    except ValueError:
        return payload.strip()[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message") or err.get("detail")
            if msg:
                return str(msg)
        msg = data.get("message") or data.get("detail") or data.get("error")
        if msg:
            return str(msg)
    return payload.strip()[:300]


def _format_llm_error(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text or ""
        message = _extract_error_message(body) if body else str(exc)
        lowered = message.lower()
        if status in (401, 403):
            return "Model API key is invalid or lacks permission"
        if status == 429 or "rate limit" in lowered:
            return "Model API is rate limited, try again later"
        if status == 402 or "insufficient" in lowered or "quota" in lowered:
            return "Model API quota exhausted"
        return f"Model API call failed ({status}): {message}"
    if isinstance(exc, httpx.HTTPError):
        return "Model API call failed, check network or service status"
    return str(exc)[:300]


def _get_retry_delay(exc: httpx.HTTPError, attempt: int) -> float:
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 429:
            retry_after = exc.response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                return min(30.0, float(retry_after))
            return min(30.0, 2.0 * (attempt + 1))
    return 0.0


def _join_text_chunks(chunks: list[dict[str, Any]]) -> str:
    texts: list[str] = []
    for chunk in chunks:
        if not isinstance(chunk, dict):
            continue
        text = chunk.get("text")
        if isinstance(text, str) and text.strip():
            texts.append(text)
    return "\n".join(texts).strip()


def _extract_chat_content(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ValueError("Invalid chat response format: missing choices.")
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        joined = _join_text_chunks(content)
        if joined:
            return joined
    raise ValueError("Invalid chat response format: missing message content.")


# chat-completions 请求体；PDF chunk 以 base64 文件内容附带
def _build_chat_payload(model: str, prompt: str, document: bytes | None = None) -> dict[str, Any]:
    user_content: Any = prompt
    if document is not None:
        encoded = base64.b64encode(document).decode("ascii")
        user_content = [
            {
                "type": "file",
                "file": {"filename": "chunk.pdf", "file_data": f"data:application/pdf;base64,{encoded}"},
            },
            {"type": "text", "text": prompt},
        ]
    return {
        "model": model,
        "temperature": 0.2,
        "max_tokens": settings.llm_max_tokens,
        "messages": [
            {"role": "system", "content": "Return only valid JSON."},
            {"role": "user", "content": user_content},
        ],
        "response_format": {"type": "json_object"},
    }


# 调用 OpenAI 兼容接口并解析为 JSON（429 按 Retry-After 重试）
def _call_openai_compatible(prompt: str, config: LLMConfig, document: bytes | None = None) -> Dict[str, Any]:
    base_url = config.base_url or settings.llm_base_url
    url = f"{base_url.rstrip('/')}/chat/completions"
    headers = {"Authorization": f"Bearer {config.api_key}"}
    payload = _build_chat_payload(config.model or settings.llm_model, prompt, document)

    with httpx.Client(timeout=settings.llm_timeout_seconds) as client:
        for attempt in range(MAX_TRANSPORT_RETRIES + 1):
            try:
                response = client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                delay = _get_retry_delay(exc, attempt)
                if delay <= 0 or attempt == MAX_TRANSPORT_RETRIES:
                    raise
                logger.warning("LLM rate limited, retrying in %.1fs (attempt %s)", delay, attempt + 1)
                time.sleep(delay)
        content = _extract_chat_content(response.json())
        return json.loads(_strip_json_fence(content))


# 调用 Gemini API
def _call_gemini(prompt: str, config: LLMConfig, document: bytes | None = None) -> Dict[str, Any]:
    from google import genai
    from google.genai import types

    client = genai.Client(api_key=config.api_key)
    contents: List[Any] = []
    if document is not None:
        contents.append(types.Part.from_bytes(data=document, mime_type="application/pdf"))
    contents.append(prompt)
    response = client.models.generate_content(
        model=config.model or settings.gemini_model,
        contents=contents,
        config=types.GenerateContentConfig(
            response_mime_type="application/json",
            max_output_tokens=settings.llm_max_tokens,
        ),
    )
    content = response.text or ""
    return json.loads(_strip_json_fence(content))


def _call_llm(prompt: str, config: LLMConfig, document: bytes | None = None) -> Dict[str, Any]:
    if config.provider.lower() == "gemini":
        return _call_gemini(prompt, config, document)
    return _call_openai_compatible(prompt, config, document)


@lru_cache(maxsize=1)
def _get_encoding():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


# 估算文本 token 数量（优先使用 tiktoken）
def estimate_tokens(text: str) -> int:
    try:
        return len(_get_encoding().encode(text))
    except Exception:
        # 兜底：按字符数估算
        return len(text)


# 按 token 预算截断文本
def trim_to_token_budget(text: str, budget: int) -> str:
    if budget <= 0 or estimate_tokens(text) <= budget:
        return text
    try:
        encoding = _get_encoding()
        return encoding.decode(encoding.encode(text)[:budget])
    except Exception:
        return text[:budget]


# 为单个 chunk 生成学习内容，并进行 JSON Schema 校验
def generate_study_content(chunk: bytes, prompt: str, ai_model: str) -> ChunkResult:
    config = resolve_config(ai_model)
    if not config.api_key:
        logger.info("No LLM API key configured, returning stub content")
        return ChunkResult.model_validate(_stub_result(chunk_to_markdown(chunk)))
    try:
        result = _call_llm(prompt, config, chunk)
        validate(instance=result, schema=GENERATION_OUTPUT_SCHEMA)
    except httpx.HTTPError as exc:
        raise GenerationError(_format_llm_error(exc)) from exc
    except (ValueError, ValidationError) as exc:
        raise GenerationError(f"Model returned invalid content: {str(exc)[:300]}") from exc
    return ChunkResult.model_validate(result)


# 根据 chunk 摘要与主题生成概念图谱
def generate_mind_map(summaries: str, topics: Iterable[str], ai_model: str) -> MindMap:
    topic_list = list(topics)
    config = resolve_config(ai_model)
    if not config.api_key:
        logger.info("No LLM API key configured, returning stub mind map")
        nodes = [{"id": "root", "label": "Overview", "type": "main"}]
        connections = []
        for idx, topic in enumerate(topic_list[:20]):
            nodes.append({"id": f"t{idx}", "label": topic, "type": "subtopic"})
            connections.append({"source": "root", "target": f"t{idx}", "label": "", "type": "hierarchical"})
        return MindMap.model_validate({"nodes": nodes, "connections": connections})

    summaries = trim_to_token_budget(summaries, settings.mind_map_max_input_tokens)
    prompt = build_mind_map_prompt(summaries, topic_list)
    try:
        result = _call_llm(prompt, config)
        validate(instance=result, schema=MIND_MAP_SCHEMA)
    except httpx.HTTPError as exc:
        raise GenerationError(_format_llm_error(exc)) from exc
    except (ValueError, ValidationError) as exc:
        raise GenerationError(f"Model returned an invalid mind map: {str(exc)[:300]}") from exc
    return MindMap.model_validate(result)
