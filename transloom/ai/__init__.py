"""
AI Module

This module provides the translation providers and their errors.
"""

from transloom.ai.exceptions import ProviderError, ProviderErrorKind, TRANSIENT_KINDS
from transloom.ai.service import AIService, EchoProvider, build_provider, validate_ai_config

__all__ = [
    'ProviderError',
    'ProviderErrorKind',
    'TRANSIENT_KINDS',
    'AIService',
    'EchoProvider',
    'build_provider',
    'validate_ai_config',
]
