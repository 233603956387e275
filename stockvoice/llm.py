"""Language-model client construction.

Every provider is reached through an OpenAI-compatible ``chat.completions``
interface, so the interpreter never cares which one it talks to.
"""

from __future__ import annotations

import os
from typing import Any

import openai
from groq import Groq

# Providers whose endpoints honour response_format={"type": "json_object"}
JSON_MODE_PROVIDERS = frozenset({"groq", "openai", "gemini"})


def build_client(
    provider: str = "groq",
    api_key: str | None = None,
    base_url: str | None = None,
) -> Any:
    """Create a chat-completions client for *provider*."""
    if provider == "groq" and not base_url:
        return Groq(api_key=api_key)

    # Normalize defaults for Ollama
    if provider == "ollama" and not base_url:
        base_url = "http://localhost:11434/v1"
        if not api_key:
            api_key = "ollama"

    # Normalize defaults for Gemini (OpenAI-compatible endpoint)
    if provider == "gemini" and not base_url:
        base_url = "https://generativelanguage.googleapis.com/v1beta/openai/"
        if not api_key:
            api_key = os.environ.get("GEMINI_API_KEY", "")

    # A custom base_url (like a local server) without a key gets a dummy key
    if base_url and not api_key:
        api_key = "dummy"

    return openai.OpenAI(api_key=api_key, base_url=base_url)
