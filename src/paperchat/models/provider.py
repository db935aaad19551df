from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from src.paperchat.config import DEFAULT_PDF_MAX_CHARS, DEFAULT_PROVIDER_ID

# Wire format spoken by a provider; custom providers pick one of these.
ProviderType = Literal["openai", "anthropic", "gemini"]


class ApiKeyEntry(BaseModel):
    key: str
    name: str = ""


class EndpointConfig(BaseModel):
    """An alternative base URL for a provider with its own pool of API keys."""
    base_url: str
    name: str = ""
    api_keys: List[ApiKeyEntry] = Field(default_factory=list)
    current_api_key_index: int = 0

    def current_key(self) -> Optional[ApiKeyEntry]:
        if not self.api_keys:
            return None
        index = self.current_api_key_index
        if index < 0 or index >= len(self.api_keys):
            index = 0
        return self.api_keys[index]


class ModelInfo(BaseModel):
    """Metadata for one model. is_custom marks models the user added by hand."""
    model_id: str
    nickname: Optional[str] = None
    context_window: Optional[int] = None
    max_output: Optional[int] = None
    capabilities: List[str] = Field(default_factory=list)
    is_custom: bool = False


class ProviderConfig(BaseModel):
    """
    Persisted configuration of one provider.

    Routing is resolved from endpoints[current_endpoint_index] when endpoints
    exist, otherwise from base_url and api_key. The indices stored here are the
    only record of which endpoint and key are in use.
    """
    id: str
    name: str
    type: ProviderType = "openai"
    enabled: bool = True
    is_builtin: bool = False
    order: int = 100
    api_key: str = ""
    base_url: str = ""
    default_model: str = ""
    available_models: List[str] = Field(default_factory=list)
    models: List[ModelInfo] = Field(default_factory=list)
    max_tokens: int = 0
    temperature: Optional[float] = None
    system_prompt: str = ""
    pdf_max_chars: int = DEFAULT_PDF_MAX_CHARS
    streaming_output: bool = True
    endpoints: List[EndpointConfig] = Field(default_factory=list)
    current_endpoint_index: int = 0
    thinking_enabled: bool = False
    reasoning_effort: Optional[str] = None

    def current_endpoint(self) -> Optional[EndpointConfig]:
        if not self.endpoints:
            return None
        index = self.current_endpoint_index
        if index < 0 or index >= len(self.endpoints):
            index = 0
        return self.endpoints[index]

    def resolved_base_url(self) -> str:
        endpoint = self.current_endpoint()
        base_url = endpoint.base_url if endpoint and endpoint.base_url else self.base_url
        return base_url.rstrip("/")

    def resolved_api_key(self) -> str:
        endpoint = self.current_endpoint()
        if endpoint:
            entry = endpoint.current_key()
            if entry and entry.key.strip():
                return entry.key.strip()
        return self.api_key.strip()

    def active_model(self) -> str:
        if self.default_model:
            return self.default_model
        return self.available_models[0] if self.available_models else ""


class ProviderStorageData(BaseModel):
    """Serialized provider registry as stored in user settings."""
    active_provider_id: str = DEFAULT_PROVIDER_ID
    providers: List[ProviderConfig] = Field(default_factory=list)


class ModelSelection(BaseModel):
    """Value published to registry subscribers whenever the selection changes."""
    provider_id: str
    model_id: str
