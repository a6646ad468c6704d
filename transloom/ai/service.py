"""
AI Translation Service Module

This module provides the translation providers the dispatcher calls:
- AIService: remote model client configured from the app config
- EchoProvider: returns the source text unchanged (dry runs, tests)
- build_provider: pick one from the config

Providers translate one segment per call and raise ProviderError on failure;
retries are the dispatcher's job.

For provider-specific API implementations, see ai/providers.py
"""

import threading
from typing import Any, Dict, Optional

import httpx

from transloom.config import (
    BUILTIN_PROVIDER_DISPLAY_NAMES,
    DEFAULT_PROMPT_TEMPLATE,
    DEFAULT_SYSTEM_MESSAGE,
)
from transloom.logger import get_logger
from transloom import language_codes as lc
from transloom.ai.exceptions import ProviderError, ProviderErrorKind
from transloom.utils import preview

logger = get_logger(__name__)


def validate_ai_config(config: Dict[str, Any], provider_override: Optional[str] = None) -> None:
    """
    Validate that AI provider configuration is properly set up.

    Raises:
        ProviderError: (kind auth or invalid_input) if configuration is missing
    """
    provider = provider_override or config.get('ai_provider', 'openai')
    if provider == 'echo':
        return

    provider_config = config.get(provider)
    if not isinstance(provider_config, dict) or not provider_config:
        raise ProviderError(f"AI provider '{provider}' configuration not found",
                            kind=ProviderErrorKind.INVALID_INPUT)

    api_key = provider_config.get('api_key', '')
    if not api_key or api_key == "YOUR_API_KEY_HERE":
        raise ProviderError(f"{AIService.display_name(provider)} API key not configured",
                            kind=ProviderErrorKind.AUTH)

    models = [m for m in provider_config.get('models', []) if m and isinstance(m, str)]
    if not models and not provider_config.get('model'):
        raise ProviderError(f"{AIService.display_name(provider)} model not configured",
                            kind=ProviderErrorKind.INVALID_INPUT)


class AIService:
    """Remote model translation provider."""

    def __init__(self, config: Dict[str, Any], provider_override: Optional[str] = None,
                 model_override: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.provider = provider_override or config.get('ai_provider', 'openai')
        self.model_override = model_override
        # Custom transport (e.g. httpx.MockTransport in tests)
        self.transport = transport
        # Token usage tracking, shared by dispatcher worker threads
        self._usage_lock = threading.Lock()
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.call_count = 0
        logger.info(f"Initialized AI service with provider: {self.provider}, model override: {model_override}")

    @staticmethod
    def display_name(provider: str) -> str:
        if provider in BUILTIN_PROVIDER_DISPLAY_NAMES:
            return BUILTIN_PROVIDER_DISPLAY_NAMES[provider]
        return f"Custom provider '{provider}'"

    def _get_model(self, model_config: Optional[Dict[str, Any]] = None) -> str:
        """
        Get the model to use for translation.

        Priority:
        1. model_override (if set)
        2. 'model' from the per-call model config
        3. First model from the provider's 'models' array
        4. 'model' field of the provider config
        """
        if self.model_override:
            return self.model_override
        if model_config and model_config.get('model'):
            return model_config['model']
        provider_config = self.config.get(self.provider, {})
        models = provider_config.get('models', [])
        if models and isinstance(models, list) and models[0]:
            return models[0]
        return provider_config.get('model', '')

    def record_usage(self, prompt_tokens: int, completion_tokens: int):
        with self._usage_lock:
            self.total_prompt_tokens += prompt_tokens or 0
            self.total_completion_tokens += completion_tokens or 0
            self.call_count += 1

    def get_total_token_usage(self) -> Dict[str, int]:
        """Get accumulated token usage."""
        with self._usage_lock:
            return {
                'prompt_tokens': self.total_prompt_tokens,
                'completion_tokens': self.total_completion_tokens,
                'calls': self.call_count,
            }

    def get_system_message(self) -> str:
        return self.config.get('prompt', {}).get('system_message') or DEFAULT_SYSTEM_MESSAGE

    def build_prompt(self, text: str, source_lang: str, target_lang: str,
                     model_config: Optional[Dict[str, Any]] = None) -> str:
        """Build the translation prompt from the template and prompt settings."""
        prompt_config = dict(self.config.get('prompt', {}))
        prompt_config.update({k: v for k, v in (model_config or {}).items() if v is not None})

        source_language_name, source_language_code = lc.describe_language(source_lang)
        target_language_name, target_language_code = lc.describe_language(target_lang)

        instructions = (prompt_config.get('additional_instructions') or '').strip()
        instructions_section = f"Additional instructions: {instructions}\n" if instructions else ""

        template = prompt_config.get('template') or DEFAULT_PROMPT_TEMPLATE
        return template.format(
            source_language_name=source_language_name,
            source_language_code=source_language_code,
            target_language_name=target_language_name,
            target_language_code=target_language_code,
            subject=prompt_config.get('subject') or 'Unknown',
            tone=prompt_config.get('tone') or 'formal',
            instructions_section=instructions_section,
            text=text,
        )

    def translate(self, text: str, source_lang: str, target_lang: str,
                  model_config: Optional[Dict[str, Any]] = None) -> str:
        """
        Translate one segment.

        Raises:
            ProviderError: the call failed; ``kind`` says whether retrying can help
        """
        from transloom.ai.providers import call_gemini_api, call_openai_compatible_api

        model = self._get_model(model_config)
        timeout = (model_config or {}).get('timeout')
        prompt = self.build_prompt(text, source_lang, target_lang, model_config)
        logger.debug(f"Translating '{preview(text)}' with {self.provider}/{model}")

        if self.provider == 'gemini':
            translated = call_gemini_api(self, prompt, model, timeout)
        else:
            translated = call_openai_compatible_api(self, self.provider, prompt, model, timeout)

        translated = translated.strip()
        if not translated:
            raise ProviderError(f"{self.display_name(self.provider)} returned an empty translation",
                                kind=ProviderErrorKind.UNKNOWN)
        return translated


class EchoProvider:
    """Returns source text unchanged. Used for dry runs and tests."""

    provider = "echo"

    def __init__(self):
        self._lock = threading.Lock()
        self.call_count = 0

    def translate(self, text: str, source_lang: str, target_lang: str,
                  model_config: Optional[Dict[str, Any]] = None) -> str:
        with self._lock:
            self.call_count += 1
        return text


def build_provider(config: Dict[str, Any], transport: Optional[httpx.BaseTransport] = None):
    """Create the provider selected by ``ai_provider`` in the config."""
    provider = config.get('ai_provider', 'openai')
    if provider == 'echo':
        return EchoProvider()
    return AIService(config, transport=transport)
