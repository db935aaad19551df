import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from src.paperchat.config import DEFAULT_PROVIDER_ID
from src.paperchat.models.chat import now_ms
from src.paperchat.models.provider import (
    ModelInfo,
    ModelSelection,
    ProviderConfig,
    ProviderStorageData,
    ProviderType,
)
from src.paperchat.services.user_settings_manager import UserSettingsManager
from src.providers.base import LLMProvider
from src.providers.http_provider import HTTPChatProvider
from src.providers.provider_specs import builtin_configs

logger = logging.getLogger(__name__)

PROVIDERS_CONFIG_KEY = "providers_config"
SELECTED_MODEL_KEY = "model"
THINKING_MODE_KEY = "thinking_mode_enabled"

ProviderFactory = Callable[[ProviderConfig], LLMProvider]
SelectionListener = Callable[[ModelSelection], None]


class ProviderRegistry:
    """
    Owns provider configurations, their adapters and the active selection.

    Configuration is persisted through the settings manager after every
    mutation. Listeners registered with subscribe() receive the current
    ModelSelection immediately and again whenever it changes.
    """

    def __init__(
        self,
        settings: UserSettingsManager,
        provider_factory: Optional[ProviderFactory] = None,
    ):
        self.settings = settings
        self._provider_factory: ProviderFactory = provider_factory or HTTPChatProvider
        self._lock = threading.RLock()
        self._configs: List[ProviderConfig] = []
        self._providers: Dict[str, LLMProvider] = {}
        self._active_provider_id = DEFAULT_PROVIDER_ID
        self._listeners: List[SelectionListener] = []
        self._load()

    # ------------------- Boot / Config -------------------
    def _load(self) -> None:
        data = ProviderStorageData()
        stored = self.settings.get(PROVIDERS_CONFIG_KEY)
        if stored:
            try:
                data = ProviderStorageData.model_validate(stored)
            except ValidationError as exc:
                logger.error("Stored provider configuration is invalid; using defaults: %s", exc)

        with self._lock:
            self._configs = self._merge_with_defaults(data.providers)
            active = data.active_provider_id
            self._active_provider_id = active if self._find(active) else DEFAULT_PROVIDER_ID
            self._restore_selected_model()
            self._initialize_providers()
        logger.info(
            "Loaded %d provider configurations (active: %s)", len(self._configs), self._active_provider_id
        )

    @staticmethod
    def _merge_with_defaults(stored: List[ProviderConfig]) -> List[ProviderConfig]:
        """Stored values win over built-in defaults; new built-ins appear; custom providers follow."""
        stored_by_id = {config.id: config for config in stored}
        merged: List[ProviderConfig] = []
        for default in builtin_configs():
            saved = stored_by_id.pop(default.id, None)
            if saved is None:
                merged.append(default)
                continue
            values = default.model_dump()
            values.update(saved.model_dump(exclude_unset=True))
            values.update({"is_builtin": True, "order": default.order, "type": default.type})
            if not values.get("endpoints"):
                values["endpoints"] = default.model_dump()["endpoints"]
            merged.append(ProviderConfig.model_validate(values))

        for config in stored_by_id.values():
            if config.is_builtin:
                logger.info("Dropping stored configuration for unknown built-in provider '%s'", config.id)
                continue
            merged.append(config)
        return merged

    def _restore_selected_model(self) -> None:
        """Give the active provider the last selected model when it has none of its own."""
        selected = self.settings.get(SELECTED_MODEL_KEY)
        config = self._find(self._active_provider_id)
        if not selected or config is None or config.active_model():
            return
        index = self._configs.index(config)
        self._configs[index] = config.model_copy(update={"default_model": selected})

    def _initialize_providers(self) -> None:
        self._providers = {}
        for config in self._configs:
            if config.enabled:
                self._providers[config.id] = self._create_provider(config)

    def _create_provider(self, config: ProviderConfig) -> LLMProvider:
        return self._provider_factory(config.model_copy(deep=True))

    def _find(self, provider_id: str) -> Optional[ProviderConfig]:
        for config in self._configs:
            if config.id == provider_id:
                return config
        return None

    def _require(self, provider_id: str) -> ProviderConfig:
        config = self._find(provider_id)
        if config is None:
            raise KeyError(f"Unknown provider '{provider_id}'")
        return config

    def _replace(self, config: ProviderConfig) -> None:
        for index, existing in enumerate(self._configs):
            if existing.id == config.id:
                self._configs[index] = config
                break
        if config.enabled:
            provider = self._providers.get(config.id)
            if provider is None:
                self._providers[config.id] = self._create_provider(config)
            else:
                provider.update_config(config.model_copy(deep=True))
        else:
            self._providers.pop(config.id, None)

    def _save(self) -> None:
        data = ProviderStorageData(active_provider_id=self._active_provider_id, providers=self._configs)
        self.settings.set(PROVIDERS_CONFIG_KEY, data.model_dump(mode="json"))

    # ------------------- Queries -------------------
    def get_provider(self, provider_id: str) -> Optional[LLMProvider]:
        with self._lock:
            return self._providers.get(provider_id)

    def get_active_provider(self) -> Optional[LLMProvider]:
        with self._lock:
            return self._providers.get(self._active_provider_id)

    def get_active_provider_id(self) -> str:
        return self._active_provider_id

    def get_provider_config(self, provider_id: str) -> Optional[ProviderConfig]:
        with self._lock:
            config = self._find(provider_id)
            return config.model_copy(deep=True) if config else None

    def get_active_provider_config(self) -> Optional[ProviderConfig]:
        return self.get_provider_config(self._active_provider_id)

    def get_all_configs(self) -> List[ProviderConfig]:
        with self._lock:
            return [config.model_copy(deep=True) for config in self._configs]

    def get_model_info(self, provider_id: str, model_id: str) -> Optional[ModelInfo]:
        config = self.get_provider_config(provider_id)
        if config is None:
            return None
        for info in config.models:
            if info.model_id == model_id:
                return info
        return None

    def get_selected_model(self) -> ModelSelection:
        with self._lock:
            config = self._find(self._active_provider_id)
            model_id = config.active_model() if config else ""
            return ModelSelection(provider_id=self._active_provider_id, model_id=model_id)

    # ------------------- Mutations -------------------
    def set_active_provider(self, provider_id: str) -> None:
        with self._lock:
            self._require(provider_id)
            if provider_id == self._active_provider_id:
                return
            self._active_provider_id = provider_id
            self._apply_thinking_mode(provider_id)
            self._save()
        logger.info("Active provider set to %s", provider_id)
        self._notify()

    def update_provider_config(self, provider_id: str, updates: Dict[str, Any]) -> ProviderConfig:
        """Merge ``updates`` into the provider's configuration and persist it."""
        with self._lock:
            current = self._require(provider_id)
            values = current.model_dump()
            values.update(updates)
            values.update({"id": current.id, "is_builtin": current.is_builtin})
            if current.is_builtin:
                values["type"] = current.type
            updated = ProviderConfig.model_validate(values)
            self._replace(updated)
            self._save()
            is_active = provider_id == self._active_provider_id
        if is_active:
            self._notify()
        return updated.model_copy(deep=True)

    def add_custom_provider(
        self,
        name: str,
        wire_format: ProviderType = "openai",
        base_url: str = "",
        api_key: str = "",
    ) -> ProviderConfig:
        with self._lock:
            provider_id = f"custom-{now_ms()}"
            while self._find(provider_id):
                provider_id = f"custom-{now_ms() + 1}"
            config = ProviderConfig(
                id=provider_id,
                name=name.strip() or "Custom Provider",
                type=wire_format,
                enabled=True,
                is_builtin=False,
                order=len(self._configs),
                base_url=base_url,
                api_key=api_key,
            )
            self._configs.append(config)
            self._providers[config.id] = self._create_provider(config)
            self._save()
        logger.info("Added custom provider %s (%s)", config.id, config.name)
        return config.model_copy(deep=True)

    def remove_custom_provider(self, provider_id: str) -> bool:
        with self._lock:
            config = self._find(provider_id)
            if config is None or config.is_builtin:
                return False
            self._configs = [existing for existing in self._configs if existing.id != provider_id]
            self._providers.pop(provider_id, None)
            was_active = provider_id == self._active_provider_id
            if was_active:
                self._active_provider_id = DEFAULT_PROVIDER_ID
            self._save()
        logger.info("Removed custom provider %s", provider_id)
        if was_active:
            self._notify()
        return True

    def add_custom_model(self, provider_id: str, model_id: str, nickname: Optional[str] = None) -> bool:
        model_id = model_id.strip()
        if not model_id:
            return False
        with self._lock:
            config = self._require(provider_id)
            if model_id in config.available_models:
                return False
            models = list(config.models) + [ModelInfo(model_id=model_id, nickname=nickname, is_custom=True)]
            self.update_provider_config(
                provider_id,
                {"available_models": config.available_models + [model_id], "models": models},
            )
        return True

    def remove_custom_model(self, provider_id: str, model_id: str) -> bool:
        """Remove a user-added model; vendor-advertised models are left alone."""
        with self._lock:
            config = self._require(provider_id)
            info = next((info for info in config.models if info.model_id == model_id), None)
            if info is None or not info.is_custom:
                return False
            available = [model for model in config.available_models if model != model_id]
            updates: Dict[str, Any] = {
                "available_models": available,
                "models": [existing for existing in config.models if existing.model_id != model_id],
            }
            if config.default_model == model_id:
                updates["default_model"] = available[0] if available else ""
            self.update_provider_config(provider_id, updates)
        return True

    def refresh_models(self, provider_id: str) -> List[str]:
        """Fetch the vendor's model list, keeping user-added models."""
        provider = self.get_provider(provider_id)
        if provider is None:
            return []
        fetched = provider.list_models()
        with self._lock:
            config = self._require(provider_id)
            custom = [info.model_id for info in config.models if info.is_custom]
            available = list(dict.fromkeys(fetched + custom))
            self.update_provider_config(provider_id, {"available_models": available})
        return available

    def select_model(self, model_id: str, provider_id: Optional[str] = None) -> None:
        """Make ``model_id`` the default of its provider and that provider the active one."""
        provider_id = provider_id or self._active_provider_id
        with self._lock:
            config = self._require(provider_id)
            self._replace(config.model_copy(update={"default_model": model_id}))
            self._active_provider_id = provider_id
            self._save()
        self.settings.set(SELECTED_MODEL_KEY, model_id)
        logger.info("Selected model %s on %s", model_id, provider_id)
        self._notify()

    def is_thinking_mode_enabled(self) -> bool:
        return bool(self.settings.get(THINKING_MODE_KEY, False))

    def _apply_thinking_mode(self, provider_id: str) -> None:
        config = self._require(provider_id)
        enabled = self.is_thinking_mode_enabled()
        if config.thinking_enabled != enabled:
            self._replace(config.model_copy(update={"thinking_enabled": enabled}))

    def set_thinking_mode(self, enabled: bool) -> None:
        """Toggle extended reasoning for the active provider and remember the preference."""
        self.settings.set(THINKING_MODE_KEY, bool(enabled))
        self.update_provider_config(self._active_provider_id, {"thinking_enabled": bool(enabled)})
        logger.info("Thinking mode %s", "enabled" if enabled else "disabled")

    # ------------------- Endpoint / Key Rotation -------------------
    def set_current_endpoint(self, provider_id: str, endpoint_index: int) -> None:
        with self._lock:
            config = self._require(provider_id)
            if not 0 <= endpoint_index < len(config.endpoints):
                raise IndexError(f"Provider '{provider_id}' has no endpoint {endpoint_index}")
            self.update_provider_config(provider_id, {"current_endpoint_index": endpoint_index})

    def set_current_api_key(self, provider_id: str, endpoint_index: int, key_index: int) -> None:
        with self._lock:
            config = self._require(provider_id)
            if not 0 <= endpoint_index < len(config.endpoints):
                raise IndexError(f"Provider '{provider_id}' has no endpoint {endpoint_index}")
            endpoints = [endpoint.model_dump() for endpoint in config.endpoints]
            if not 0 <= key_index < len(endpoints[endpoint_index]["api_keys"]):
                raise IndexError(f"Endpoint {endpoint_index} of '{provider_id}' has no key {key_index}")
            endpoints[endpoint_index]["current_api_key_index"] = key_index
            self.update_provider_config(provider_id, {"endpoints": endpoints})

    def rotate_api_key(self, provider_id: str) -> Optional[str]:
        """Advance to the next key of the current endpoint, wrapping around. Returns the key's name."""
        with self._lock:
            config = self._require(provider_id)
            endpoint = config.current_endpoint()
            if endpoint is None or len(endpoint.api_keys) < 2:
                return None
            next_index = (endpoint.current_api_key_index + 1) % len(endpoint.api_keys)
            endpoint_index = config.endpoints.index(endpoint)
            self.set_current_api_key(provider_id, endpoint_index, next_index)
            entry = endpoint.api_keys[next_index]
        logger.info("Rotated %s to API key #%d", provider_id, next_index)
        return entry.name or f"key {next_index + 1}"

    # ------------------- Subscriptions -------------------
    def subscribe(self, listener: SelectionListener) -> Callable[[], None]:
        """Register ``listener``; it is called right away with the current selection."""
        with self._lock:
            self._listeners.append(listener)
        self._call_listener(listener, self.get_selected_model())

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        selection = self.get_selected_model()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            self._call_listener(listener, selection)

    @staticmethod
    def _call_listener(listener: SelectionListener, selection: ModelSelection) -> None:
        try:
            listener(selection)
        except Exception:
            logger.error("Provider selection listener %r failed", listener, exc_info=True)

    # ------------------- Lifecycle -------------------
    def refresh(self) -> None:
        """Reload configuration from settings, e.g. after another window edited it."""
        self.settings.reload()
        self._load()
        self._notify()

    def destroy(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._providers.clear()
