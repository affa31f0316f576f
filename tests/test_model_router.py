"""Unit tests for `ModelRouter` provider selection."""

from __future__ import annotations

from typing import Dict

import pytest

from src.bizflow.services.model_router import ModelRouter, ProviderSelection


def _with_env(values: Dict[str, str]) -> ModelRouter:
    """Helper to instantiate a router with an explicit environment."""

    return ModelRouter(env=dict(values))


def test_router_prefers_xai():
    router = _with_env({"XAI_API_KEY": "xai", "OPENAI_API_KEY": "openai"})
    selection = router.select_provider()
    assert isinstance(selection, ProviderSelection)
    assert selection.name == "xai"
    assert selection.model == "grok-4-1-fast"
    assert router.api_key(selection) == "xai"
    assert router.base_url(selection) == "https://api.x.ai/v1"


def test_router_falls_back_to_openai():
    router = _with_env({"OPENAI_API_KEY": "openai", "OPENAI_MODEL": "gpt-4.1-mini"})
    selection = router.select_provider()
    assert selection.name == "openai"
    assert selection.model == "gpt-4.1-mini"


def test_preferred_provider_moves_to_front():
    router = _with_env(
        {"XAI_API_KEY": "xai", "OPENAI_API_KEY": "openai", "BIZFLOW_MODEL_PROVIDER": "OpenAI"}
    )
    assert router.select_provider().name == "openai"


def test_unknown_preferred_provider_is_ignored():
    router = _with_env({"XAI_API_KEY": "xai", "BIZFLOW_MODEL_PROVIDER": "gemini"})
    assert router.select_provider().name == "xai"


def test_local_provider_requires_opt_in():
    assert _with_env({}).maybe_select_provider() is None

    enabled = _with_env({"BIZFLOW_ENABLE_LOCAL_PROVIDER": "1", "LOCAL_BASE_URL": "http://gpu:8080/v1/"})
    selection = enabled.select_provider()
    assert selection.name == "local"
    assert selection.requires_api_key is False
    assert enabled.api_key(selection) is None
    assert enabled.base_url(selection) == "http://gpu:8080/v1"

    preferred = _with_env({"BIZFLOW_MODEL_PROVIDER": "local"})
    assert preferred.select_provider().name == "local"


def test_select_provider_raises_without_credentials():
    with pytest.raises(RuntimeError):
        _with_env({"OPENAI_API_KEY": ""}).select_provider()


def test_router_reads_process_env_by_default(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    selection = ModelRouter().select_provider()
    assert selection.name == "openai"
