"""Tests for ProviderRegistry - configuration, selection and key rotation."""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from src.paperchat.models.provider import ModelSelection
from src.paperchat.services.provider_registry import PROVIDERS_CONFIG_KEY, ProviderRegistry
from src.paperchat.services.user_settings_manager import UserSettingsManager
from src.providers.http_provider import HTTPChatProvider
from src.providers.provider_specs import PROVIDER_SPECS


@pytest.fixture
def settings(tmp_path: Path) -> UserSettingsManager:
    return UserSettingsManager(tmp_path / "user_settings.json")


@pytest.fixture
def registry(settings: UserSettingsManager) -> ProviderRegistry:
    return ProviderRegistry(settings)


def _enable(registry: ProviderRegistry, provider_id: str = "openai", **extra) -> None:
    updates = {"enabled": True, "api_key": "sk-test", "default_model": "gpt-4o"}
    updates.update(extra)
    registry.update_provider_config(provider_id, updates)


def test_builtins_created_on_first_use(registry: ProviderRegistry) -> None:
    configs = registry.get_all_configs()

    assert {config.id for config in configs} == set(PROVIDER_SPECS)
    assert [config.order for config in configs] == sorted(config.order for config in configs)
    assert registry.get_active_provider_id() == "openai"
    assert registry.get_active_provider() is None


def test_enabling_provider_creates_adapter(registry: ProviderRegistry) -> None:
    _enable(registry)

    provider = registry.get_active_provider()
    assert isinstance(provider, HTTPChatProvider)
    assert provider.is_ready() is True
    assert provider.config.api_key == "sk-test"


def test_configuration_persists_across_instances(registry: ProviderRegistry, settings) -> None:
    _enable(registry, "claude", default_model="claude-sonnet-4-5")
    registry.set_active_provider("claude")

    reopened = ProviderRegistry(UserSettingsManager(settings.path))

    assert reopened.get_active_provider_id() == "claude"
    assert reopened.get_provider_config("claude").api_key == "sk-test"
    stored = settings.reload()[PROVIDERS_CONFIG_KEY]
    assert stored["active_provider_id"] == "claude"


def test_builtin_identity_cannot_be_changed(registry: ProviderRegistry) -> None:
    updated = registry.update_provider_config("claude", {"type": "openai", "is_builtin": False, "id": "x"})

    assert updated.id == "claude"
    assert updated.type == "anthropic"
    assert updated.is_builtin is True


def test_returned_configs_are_copies(registry: ProviderRegistry) -> None:
    config = registry.get_provider_config("openai")
    config.api_key = "mutated"

    assert registry.get_provider_config("openai").api_key == ""


def test_unknown_provider_raises(registry: ProviderRegistry) -> None:
    with pytest.raises(KeyError):
        registry.set_active_provider("nope")


# -- Subscriptions ----------------------------------------------------------------------


def test_subscribe_calls_back_immediately_and_on_change(registry: ProviderRegistry) -> None:
    seen: List[ModelSelection] = []

    unsubscribe = registry.subscribe(seen.append)
    registry.select_model("gpt-4o-mini")
    unsubscribe()
    registry.select_model("o3")

    assert seen == [
        ModelSelection(provider_id="openai", model_id=""),
        ModelSelection(provider_id="openai", model_id="gpt-4o-mini"),
    ]
    assert registry.settings.get("model") == "o3"


def test_failing_listener_does_not_block_others(registry: ProviderRegistry) -> None:
    seen: List[str] = []

    def broken(selection: ModelSelection) -> None:
        raise RuntimeError("listener bug")

    registry.subscribe(broken)
    registry.subscribe(lambda selection: seen.append(selection.provider_id))
    _enable(registry, "deepseek", default_model="deepseek-chat")
    registry.set_active_provider("deepseek")

    assert seen[-1] == "deepseek"


def test_destroy_drops_listeners(registry: ProviderRegistry) -> None:
    seen: List[ModelSelection] = []
    registry.subscribe(seen.append)

    registry.destroy()
    registry.select_model("o3")

    assert len(seen) == 1


# -- Custom providers and models --------------------------------------------------------


def test_custom_provider_lifecycle(registry: ProviderRegistry) -> None:
    custom = registry.add_custom_provider("Local LLM", wire_format="openai", base_url="http://localhost:8080/v1")
    registry.set_active_provider(custom.id)

    assert custom.id.startswith("custom-")
    assert custom.is_builtin is False
    assert registry.remove_custom_provider(custom.id) is True
    assert registry.get_active_provider_id() == "openai"
    assert registry.get_provider_config(custom.id) is None


def test_builtin_provider_cannot_be_removed(registry: ProviderRegistry) -> None:
    assert registry.remove_custom_provider("openai") is False


def test_custom_models_can_be_added_and_removed(registry: ProviderRegistry) -> None:
    assert registry.add_custom_model("deepseek", "my-finetune", nickname="Mine") is True
    assert registry.add_custom_model("deepseek", "my-finetune") is False

    info = registry.get_model_info("deepseek", "my-finetune")
    assert info.is_custom is True
    assert info.nickname == "Mine"
    assert "my-finetune" in registry.get_provider_config("deepseek").available_models

    assert registry.remove_custom_model("deepseek", "my-finetune") is True
    assert "my-finetune" not in registry.get_provider_config("deepseek").available_models


def test_vendor_models_are_not_removable(registry: ProviderRegistry) -> None:
    assert registry.remove_custom_model("deepseek", "deepseek-chat") is False


def test_thinking_mode_updates_active_provider(registry: ProviderRegistry) -> None:
    registry.set_thinking_mode(True)

    assert registry.get_active_provider_config().thinking_enabled is True
    assert registry.settings.get("thinking_mode_enabled") is True


def test_thinking_preference_follows_newly_active_provider(registry: ProviderRegistry) -> None:
    registry.set_thinking_mode(True)
    _enable(registry, "deepseek", default_model="deepseek-chat")

    registry.set_active_provider("deepseek")

    assert registry.is_thinking_mode_enabled() is True
    assert registry.get_provider("deepseek").config.thinking_enabled is True


def test_last_selected_model_restored_for_active_provider(settings: UserSettingsManager) -> None:
    settings.set("model", "gpt-4.1")

    selection = ProviderRegistry(settings).get_selected_model()

    assert selection == ModelSelection(provider_id="openai", model_id="gpt-4.1")


def test_stored_default_model_wins_over_last_selection(settings: UserSettingsManager) -> None:
    registry = ProviderRegistry(settings)
    registry.update_provider_config("openai", {"default_model": "o3"})
    settings.set("model", "gpt-4.1")

    assert ProviderRegistry(settings).get_selected_model().model_id == "o3"


# -- Endpoints and key rotation ---------------------------------------------------------


def _with_keys(registry: ProviderRegistry) -> None:
    registry.update_provider_config(
        "kimi",
        {
            "enabled": True,
            "default_model": "kimi-k2",
            "endpoints": [
                {"name": "China", "base_url": "https://api.moonshot.cn/v1", "api_keys": [{"key": "k1"}, {"key": "k2", "name": "backup"}]},
                {"name": "Global", "base_url": "https://api.moonshot.ai/v1", "api_keys": [{"key": "g1"}]},
            ],
        },
    )


def test_rotate_api_key_wraps_around(registry: ProviderRegistry) -> None:
    _with_keys(registry)

    assert registry.rotate_api_key("kimi") == "backup"
    assert registry.get_provider("kimi").config.resolved_api_key() == "k2"
    assert registry.rotate_api_key("kimi") == "key 1"
    assert registry.get_provider_config("kimi").resolved_api_key() == "k1"


def test_rotation_needs_two_keys(registry: ProviderRegistry) -> None:
    _with_keys(registry)
    registry.set_current_endpoint("kimi", 1)

    assert registry.rotate_api_key("kimi") is None
    assert registry.get_provider_config("kimi").resolved_base_url() == "https://api.moonshot.ai/v1"


def test_out_of_range_indices_raise(registry: ProviderRegistry) -> None:
    _with_keys(registry)

    with pytest.raises(IndexError):
        registry.set_current_endpoint("kimi", 5)
    with pytest.raises(IndexError):
        registry.set_current_api_key("kimi", 0, 9)
