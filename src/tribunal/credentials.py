"""API key lookup for provider calls."""

import logging
import os
from typing import Dict, Optional, Protocol

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_VARS = {
    "proxyapi": "PROXYAPI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "lovable": "LOVABLE_API_KEY",
}


class CredentialStore(Protocol):
    async def get_api_key(self, user_id: str, provider: str) -> Optional[str]:
        ...


class EnvCredentialStore:
    """
    Reads one key per provider from the environment. The same keys are served
    to every user; a ``.env`` file next to the working directory is loaded once
    on construction.
    """

    def __init__(self, load_env_file: bool = True):
        if load_env_file:
            load_dotenv()

    async def get_api_key(self, user_id: str, provider: str) -> Optional[str]:
        var = ENV_VARS.get(provider, f"{provider.upper()}_API_KEY")
        key = os.environ.get(var, "").strip()
        if not key:
            logger.debug(f"No {var} in environment")
            return None
        return key


class StaticCredentialStore:
    """Keys held in memory, either shared or per user."""

    def __init__(
        self,
        keys: Optional[Dict[str, str]] = None,
        per_user: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.keys = dict(keys or {})
        self.per_user = {u: dict(k) for u, k in (per_user or {}).items()}

    async def get_api_key(self, user_id: str, provider: str) -> Optional[str]:
        user_keys = self.per_user.get(user_id, {})
        return user_keys.get(provider) or self.keys.get(provider)
