"""
AI Provider API Implementations

This module contains the API call implementations for each AI provider:
- Gemini (generateContent)
- OpenAI, DeepSeek and custom providers (OpenAI-compatible chat completions)

Each function takes an AIService instance, a prompt and a model, returns the
text response, and raises ProviderError with a kind the dispatcher uses to
decide whether to retry.
"""

from typing import Any, Optional

import httpx

from transloom.logger import get_logger
from transloom.ai.exceptions import ProviderError, ProviderErrorKind

logger = get_logger(__name__)

CONTENT_POLICY_MARKERS = ("content_policy", "content policy", "content_filter", "safety", "moderation")


def get_httpx_timeout(timeout_config: Any) -> httpx.Timeout:
    """
    Convert timeout configuration to httpx.Timeout object.

    Args:
        timeout_config: Either a number (read timeout) or a dict with
            connect, write, read, pool keys

    Returns:
        httpx.Timeout object
    """
    if isinstance(timeout_config, dict):
        return httpx.Timeout(
            connect=timeout_config.get('connect', 10.0),
            write=timeout_config.get('write', 60.0),
            read=timeout_config.get('read', 120.0),
            pool=timeout_config.get('pool', 10.0),
        )
    else:
        timeout_value = float(timeout_config) if timeout_config else 120.0
        return httpx.Timeout(
            connect=10.0,
            write=60.0,
            read=timeout_value,
            pool=10.0,
        )


def classify_status(status_code: int, error_text: str = "") -> ProviderErrorKind:
    """Map an HTTP status (and error message) to a provider error kind."""
    lowered = error_text.lower()
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 408:
        return ProviderErrorKind.TIMEOUT
    if status_code in (400, 404, 413, 422):
        if any(marker in lowered for marker in CONTENT_POLICY_MARKERS):
            return ProviderErrorKind.CONTENT_POLICY
        return ProviderErrorKind.INVALID_INPUT
    if status_code >= 500:
        return ProviderErrorKind.SERVER_ERROR
    return ProviderErrorKind.UNKNOWN


def handle_http_error(e: httpx.HTTPStatusError, provider: str):
    """Raise a classified ProviderError with a detailed message."""
    status_code = e.response.status_code
    error_text = "Unknown error"

    try:
        error_json = e.response.json()
        if isinstance(error_json, dict) and "error" in error_json:
            error_detail = error_json["error"]
            if isinstance(error_detail, dict):
                error_text = error_detail.get("message", str(error_detail))
                code = error_detail.get("code") or error_detail.get("status")
                if code:
                    error_text = f"{error_text} ({code})"
            else:
                error_text = str(error_detail)
    except ValueError:
        error_text = e.response.text[:500]

    raise ProviderError(
        f"{provider} API error ({status_code}): {error_text}",
        kind=classify_status(status_code, error_text),
        status_code=status_code,
    )


def _post(service, provider: str, url: str, body: dict, headers: Optional[dict] = None,
          params: Optional[dict] = None, timeout: Any = 120) -> dict:
    """POST a JSON body and return the decoded JSON response."""
    try:
        with httpx.Client(timeout=get_httpx_timeout(timeout), transport=service.transport) as client:
            response = client.post(url, headers=headers, params=params, json=body)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        handle_http_error(e, provider)
    except httpx.TimeoutException:
        raise ProviderError(f"{provider} API request timeout", kind=ProviderErrorKind.TIMEOUT)
    except httpx.HTTPError as e:
        raise ProviderError(f"{provider} API call failed: {e}", kind=ProviderErrorKind.UNKNOWN)
    except ValueError as e:
        raise ProviderError(f"{provider} API returned invalid JSON: {e}", kind=ProviderErrorKind.UNKNOWN)


def call_gemini_api(service, prompt: str, model: str, timeout: Any = None) -> str:
    """Call Gemini API."""
    provider_config = service.config.get('gemini', {})
    api_key = provider_config.get('api_key', '')
    timeout = timeout or provider_config.get('timeout', 120)
    api_url = provider_config.get('api_url', 'https://generativelanguage.googleapis.com/v1beta/models')

    if not api_key or api_key == "YOUR_API_KEY_HERE":
        raise ProviderError("Gemini API key not configured", kind=ProviderErrorKind.AUTH)

    url = f"{api_url.rstrip('/')}/{model}:generateContent"

    body = {
        "systemInstruction": {
            "parts": [{"text": service.get_system_message()}]
        },
        "contents": [{
            "parts": [{
                "text": prompt
            }]
        }],
        "generationConfig": {
            "maxOutputTokens": 8192,
        }
    }

    logger.debug(f"Calling Gemini API: {model}")
    result = _post(service, "Gemini", url, body, params={"key": api_key}, timeout=timeout)

    usage_metadata = result.get('usageMetadata', {})
    prompt_tokens = usage_metadata.get('promptTokenCount', 0)
    completion_tokens = usage_metadata.get('candidatesTokenCount', 0)

    # Fallback: calculate from total if candidatesTokenCount is missing
    if completion_tokens == 0 and prompt_tokens > 0:
        total_tokens = usage_metadata.get('totalTokenCount', 0)
        if total_tokens > prompt_tokens:
            completion_tokens = total_tokens - prompt_tokens
    service.record_usage(prompt_tokens, completion_tokens)

    block_reason = result.get('promptFeedback', {}).get('blockReason')
    if block_reason:
        raise ProviderError(f"Gemini blocked the prompt: {block_reason}", kind=ProviderErrorKind.CONTENT_POLICY)

    candidates = result.get('candidates') or []
    if candidates:
        candidate = candidates[0]
        if candidate.get('finishReason') == 'SAFETY':
            raise ProviderError("Gemini stopped for safety reasons", kind=ProviderErrorKind.CONTENT_POLICY)
        parts = candidate.get('content', {}).get('parts') or []
        if parts:
            return "".join(part.get('text', '') for part in parts)

    raise ProviderError(f"Unexpected Gemini API response format: {str(result)[:200]}",
                        kind=ProviderErrorKind.UNKNOWN)


def call_openai_compatible_api(service, provider: str, prompt: str, model: str, timeout: Any = None) -> str:
    """
    Call an OpenAI-compatible chat completions API (OpenAI, DeepSeek, custom
    providers) and return the text response.
    """
    provider_config = service.config.get(provider, {})
    api_key = provider_config.get('api_key', '')
    timeout = timeout or provider_config.get('timeout', 120)
    api_url = provider_config.get('api_url', '')
    display_name = service.display_name(provider)

    if not api_key or api_key == "YOUR_API_KEY_HERE":
        raise ProviderError(f"{display_name} API key not configured", kind=ProviderErrorKind.AUTH)

    if not api_url:
        raise ProviderError(f"{display_name} API URL not configured", kind=ProviderErrorKind.INVALID_INPUT)

    if not model:
        raise ProviderError(f"{display_name} model not configured", kind=ProviderErrorKind.INVALID_INPUT)

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json"
    }

    body = {
        "model": model,
        "messages": [
            {"role": "system", "content": service.get_system_message()},
            {"role": "user", "content": prompt},
        ],
    }

    logger.debug(f"  Calling {display_name} API (model: {model})...")
    result = _post(service, display_name, api_url, body, headers=headers, timeout=timeout)

    usage = result.get('usage') or {}
    service.record_usage(usage.get('prompt_tokens', 0), usage.get('completion_tokens', 0))

    choices = result.get('choices') or []
    if choices:
        choice = choices[0]
        if choice.get('finish_reason') == 'content_filter':
            raise ProviderError(f"{display_name} response was filtered", kind=ProviderErrorKind.CONTENT_POLICY)
        content = (choice.get('message') or {}).get('content') or ''
        logger.debug(f"  Received {len(content)} chars from {display_name}")
        return content

    raise ProviderError(f"No content in {display_name} response", kind=ProviderErrorKind.UNKNOWN)
