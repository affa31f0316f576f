"""Upstream provider selection for the assistant relay.

The router only resolves *configuration* (which OpenAI-compatible endpoint,
model and credential to use); it never opens a connection. Selection is
driven entirely by the environment mapping it is given, which keeps it
unit-testable with a plain dict.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should serve the relay."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based selection between the hosted and local chat providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-4-1-fast",
            "default_base_url": "https://api.x.ai/v1",
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "llama3.1",
            "default_base_url": "http://127.0.0.1:11434/v1",
            "requires_api_key": False,
        },
    }

    # The assistant was tuned against Grok; the others are fallbacks.
    ROUTING_POLICY: tuple[str, ...] = ("xai", "openai", "local")

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ
        preferred = (self._env.get("BIZFLOW_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    def _provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))

        # key-less providers must be switched on explicitly
        enabled_flag = (self._env.get("BIZFLOW_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        return enabled_flag or self._preferred_provider == provider

    def _resolve_selection(self, provider: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = str(cfg.get("model_env") or "")
        model = self._env.get(model_env) or str(cfg.get("default_model") or "")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
            base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
            default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    def select_provider(self) -> ProviderSelection:
        """Return the provider the relay should call.

        Raises
        ------
        RuntimeError
            If no provider has the credential (or opt-in flag) it needs.
        """

        priority = list(self.ROUTING_POLICY)
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self._provider_available(provider):
                return self._resolve_selection(provider)
        raise RuntimeError("No active model provider available.")

    def maybe_select_provider(self) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider()
        except RuntimeError:
            return None

    def api_key(self, selection: ProviderSelection) -> Optional[str]:
        if not selection.api_key_env:
            return None
        return self._env.get(selection.api_key_env) or None

    def base_url(self, selection: ProviderSelection) -> str:
        url = ""
        if selection.base_url_env:
            url = self._env.get(selection.base_url_env) or ""
        return (url or selection.default_base_url or "").rstrip("/")

