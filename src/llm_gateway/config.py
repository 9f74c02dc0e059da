"""API key resolution for gateway providers.

Key resolution priority:
1. Explicit ``api_key`` in the provider configuration
2. Environment variable (``.env`` is loaded into the environment at import)

Keys are returned to adapters only; nothing in this module logs them.
"""

import os
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

PROVIDER_KEY_ENV_VARS: Dict[str, str] = {
    "openrouter": "OPENROUTER_API_KEY",
    "openai_chat": "OPENAI_API_KEY",
    "openai_responses": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# Where each provider's key came from ("config" or "environment"), for diagnostics
_key_sources: Dict[str, str] = {}


def get_api_key(provider_kind: str, explicit: Optional[str] = None) -> Optional[str]:
    """Resolve the API key for a provider kind.

    Args:
        provider_kind: One of the ProviderKind values
        explicit: Key from configuration, if any

    Returns:
        The key, or None when no source provides one (e.g. the mock provider)
    """
    if explicit:
        _key_sources[provider_kind] = "config"
        return explicit

    env_var = PROVIDER_KEY_ENV_VARS.get(provider_kind)
    if env_var:
        value = os.getenv(env_var)
        if value:
            _key_sources[provider_kind] = "environment"
            return value

    _key_sources.pop(provider_kind, None)
    return None


def get_key_source(provider_kind: str) -> Optional[str]:
    """Return where the last resolved key for a provider came from."""
    return _key_sources.get(provider_kind)
