import json

import structlog

from ..config import settings
from ..errors import IntegrationError
from .http import build_client, check_response
from .retry import with_retry

logger = structlog.get_logger("venueos.openai")

MODEL_PRICING_PER_1K_TOKENS: dict[str, dict[str, float]] = {
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o-mini-2024-07-18": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
    "gpt-4.1-mini": {"prompt": 0.0004, "completion": 0.0016},
}


def calculate_openai_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    pricing = MODEL_PRICING_PER_1K_TOKENS.get(model) or MODEL_PRICING_PER_1K_TOKENS["gpt-4o-mini"]
    prompt_cost = (prompt_tokens / 1000) * pricing["prompt"]
    completion_cost = (completion_tokens / 1000) * pricing["completion"]
    return round(prompt_cost + completion_cost, 6)


def _extract_content(content) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts).strip() or None
    return None


def _post_chat(body: dict) -> dict:
    with build_client(
        settings.OPENAI_BASE_URL,
        timeout=60.0,
        headers={"Authorization": f"Bearer {settings.OPENAI_API_KEY}"},
    ) as client:
        response = client.post("/chat/completions", json=body)
        check_response("openai", response)
        return response.json()


def chat_json(
    *,
    system_prompt: str,
    user_prompt: str,
    schema_name: str,
    schema: dict,
    model: str | None = None,
) -> tuple[dict, dict]:
    """
    Runs a JSON-schema constrained chat completion.

    Returns (parsed_object, usage) where usage carries token counts and cost.
    """
    if not settings.OPENAI_API_KEY:
        raise ValueError("OpenAI is not configured")

    model_name = model or settings.OPENAI_MENU_MODEL
    body = {
        "model": model_name,
        "temperature": 0.1,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "response_format": {
            "type": "json_schema",
            "json_schema": {"name": schema_name, "schema": schema, "strict": True},
        },
    }
    payload = with_retry(_post_chat, body)

    choices = payload.get("choices") or []
    message = (choices[0].get("message") if choices else None) or {}
    content = _extract_content(message.get("content"))
    if not content:
        raise IntegrationError("openai", "OpenAI returned an empty response")
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise IntegrationError("openai", "OpenAI returned invalid JSON") from exc

    raw_usage = payload.get("usage") or {}
    prompt_tokens = int(raw_usage.get("prompt_tokens") or 0)
    completion_tokens = int(raw_usage.get("completion_tokens") or 0)
    usage = {
        "model": payload.get("model") or model_name,
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": int(raw_usage.get("total_tokens") or prompt_tokens + completion_tokens),
        "cost": calculate_openai_cost(model_name, prompt_tokens, completion_tokens),
    }
    logger.info("openai_completion", model=usage["model"], total_tokens=usage["total_tokens"], cost=usage["cost"])
    return parsed, usage
