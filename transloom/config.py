import copy
import json
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, Optional

from transloom.logger import get_logger

logger = get_logger(__name__)

CONFIG_KEY = "config"

# Get base directory (project root)
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "data"
DEFAULT_DB_FILE = DATA_DIR / "transloom.db"
DB_PATH_ENV = "TRANSLOOM_DB_PATH"

# Provider configuration constants
BUILTIN_PROVIDERS = ["openai", "deepseek", "gemini", "echo"]

BUILTIN_PROVIDER_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "deepseek": "DeepSeek",
    "gemini": "Gemini",
    "echo": "Echo (no translation)",
}

DEFAULT_SYSTEM_MESSAGE = "You are a professional translator. Return only the translated text."

# Default prompt template
DEFAULT_PROMPT_TEMPLATE = """Translate the following text from {source_language_name} ({source_language_code}) to {target_language_name} ({target_language_code}).
The text is a fragment of a document about {subject}. Use a {tone} tone.
{instructions_section}
CRITICAL REQUIREMENTS:
- Return ONLY the translated text, without explanations, quotes or markdown code blocks
- Keep numbers, URLs and proper names unchanged
- Keep leading punctuation and the overall length roughly the same

Text to translate:
{text}"""

# Default configuration template
DEFAULT_CONFIG = {
    "ai_provider": "openai",
    "openai": {
        "api_key": "YOUR_API_KEY_HERE",
        "models": ["gpt-4o-mini", "gpt-4o"],  # First is default
        "timeout": 120,
        "api_url": "https://api.openai.com/v1/chat/completions"
    },
    "deepseek": {
        "api_key": "YOUR_API_KEY_HERE",
        "models": ["deepseek-chat"],
        "timeout": 120,
        "api_url": "https://api.deepseek.com/chat/completions"
    },
    "gemini": {
        "api_key": "YOUR_API_KEY_HERE",
        "models": ["gemini-2.5-flash"],
        "timeout": 120,
        "api_url": "https://generativelanguage.googleapis.com/v1beta/models"
    },
    "pipeline": {
        "concurrency": 4,
        "max_attempts": 5,
        "backoff_base_seconds": 1.0,
        "backoff_max_seconds": 60.0,
        "stale_after_seconds": 600,
        "max_segment_chars": 5000,
        "use_translation_memory": True,
        "max_consecutive_failures": 10
    },
    "prompt": {
        "subject": "Unknown",
        "tone": "formal",
        "additional_instructions": ""
    },
    "log_mode": "off"
}


def merge_defaults(config: Dict[str, Any], defaults: Dict[str, Any] = None) -> Dict[str, Any]:
    """Fill keys missing from config with defaults (nested dicts are merged)."""
    defaults = DEFAULT_CONFIG if defaults is None else defaults
    merged = copy.deepcopy(defaults)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_defaults(value, merged[key])
        else:
            merged[key] = value
    return merged


def load_config(store) -> Dict[str, Any]:
    """Load the configuration from the job store's app_config table."""
    config_json = store.get_app_config(CONFIG_KEY)
    if not config_json:
        logger.info("No config in database, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        config = json.loads(config_json)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse config from database: {e}")
        logger.warning("Using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)
    if not isinstance(config, dict):
        logger.warning("Stored config is not an object, using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)
    logger.debug("Configuration loaded from database")
    return merge_defaults(config)


def save_config(store, config: Dict[str, Any]):
    """Save the configuration to the job store's app_config table."""
    config_json = json.dumps(config, ensure_ascii=False)
    store.set_app_config(CONFIG_KEY, config_json)
    logger.info("Configuration saved to database")


@dataclass
class PipelineSettings:
    """Settings the pipeline core consumes. Built from the config dict."""
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    stale_after_seconds: float = 600.0
    provider_timeout: float = 120.0
    max_segment_chars: Optional[int] = 5000
    use_translation_memory: bool = True
    max_consecutive_failures: Optional[int] = 10
    model: Optional[str] = None
    subject: str = "Unknown"
    tone: str = "formal"
    additional_instructions: str = ""

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < 0:
            raise ValueError("backoff delays cannot be negative")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        pipeline = config.get("pipeline", {})
        prompt = config.get("prompt", {})
        provider = config.get(config.get("ai_provider", ""), {})
        if not isinstance(provider, dict):
            provider = {}
        models = provider.get("models") or []
        timeout = provider.get("timeout", 120)
        if isinstance(timeout, dict):
            timeout = timeout.get("read", 120)
        return cls(
            concurrency=int(pipeline.get("concurrency", 4)),
            max_attempts=int(pipeline.get("max_attempts", 5)),
            backoff_base_seconds=float(pipeline.get("backoff_base_seconds", 1.0)),
            backoff_max_seconds=float(pipeline.get("backoff_max_seconds", 60.0)),
            stale_after_seconds=float(pipeline.get("stale_after_seconds", 600)),
            provider_timeout=float(timeout),
            max_segment_chars=pipeline.get("max_segment_chars", 5000) or None,
            use_translation_memory=bool(pipeline.get("use_translation_memory", True)),
            max_consecutive_failures=pipeline.get("max_consecutive_failures", 10) or None,
            model=models[0] if models else None,
            subject=prompt.get("subject", "Unknown"),
            tone=prompt.get("tone", "formal"),
            additional_instructions=prompt.get("additional_instructions", ""),
        )

    def model_config(self) -> Dict[str, Any]:
        """Per-call options handed to the translation provider."""
        return {
            "model": self.model,
            "timeout": self.provider_timeout,
            "subject": self.subject,
            "tone": self.tone,
            "additional_instructions": self.additional_instructions,
        }


def get_db_path() -> Path:
    """Database file from TRANSLOOM_DB_PATH, or data/transloom.db in the project root."""
    configured = os.environ.get(DB_PATH_ENV, "").strip()
    return Path(configured) if configured else DEFAULT_DB_FILE
