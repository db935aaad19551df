"""
Built-in provider table.

Each provider is a record rather than a subclass: its wire format, default
routing and a function contributing vendor-specific request fields. Custom
providers use the generic record for their wire format.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.paperchat.models.provider import EndpointConfig, ProviderConfig, ProviderType

ExtraFields = Callable[[ProviderConfig, str], Dict[str, Any]]

DEFAULT_TEMPERATURE = 0.7
ANTHROPIC_DEFAULT_MAX_TOKENS = 8192

# Gemini thinking budgets per effort level.
GEMINI_THINKING_BUDGETS = {"none": 0, "low": 1024, "medium": 8192, "high": 24576}


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    name: str
    wire_format: ProviderType
    base_url: str
    endpoints: Tuple[Tuple[str, str], ...] = ()
    default_models: Tuple[str, ...] = ()
    extra_fields: Optional[ExtraFields] = None
    default_temperature: Callable[[ProviderConfig], float] = field(
        default=lambda config: DEFAULT_TEMPERATURE
    )
    default_max_tokens: int = 0

    def build_config(self, order: int) -> ProviderConfig:
        """A fresh, disabled configuration for this built-in provider."""
        return ProviderConfig(
            id=self.id,
            name=self.name,
            type=self.wire_format,
            enabled=False,
            is_builtin=True,
            order=order,
            base_url=self.base_url,
            available_models=list(self.default_models),
            endpoints=[EndpointConfig(name=label, base_url=url) for label, url in self.endpoints],
        )

    def request_fields(self, config: ProviderConfig, model: str) -> Dict[str, Any]:
        if self.extra_fields is None:
            return {}
        return self.extra_fields(config, model)

    def temperature(self, config: ProviderConfig) -> float:
        if config.temperature is not None:
            return config.temperature
        return self.default_temperature(config)

    def max_tokens(self, config: ProviderConfig) -> int:
        return config.max_tokens if config.max_tokens > 0 else self.default_max_tokens


# ------------------- Vendor request fields -------------------

def _openai_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    if config.reasoning_effort:
        return {"reasoning_effort": config.reasoning_effort}
    return {}


def _claude_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    effort = config.reasoning_effort
    if not effort or effort == "none":
        return {}
    return {"thinking": {"type": "adaptive"}, "output_config": {"effort": effort}}


def _gemini_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    effort = config.reasoning_effort
    if effort not in GEMINI_THINKING_BUDGETS:
        return {}
    budget = GEMINI_THINKING_BUDGETS[effort]
    return {
        "generationConfig": {
            "thinkingConfig": {"thinkingBudget": budget, "includeThoughts": budget > 0},
        }
    }


def _deepseek_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    # deepseek-reasoner always thinks; deepseek-chat needs the switch.
    if config.thinking_enabled and model == "deepseek-chat":
        return {"thinking": {"type": "enabled"}}
    return {}


def _kimi_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    if config.thinking_enabled:
        return {}
    return {"thinking": {"type": "disabled"}}


def _glm_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    return {"thinking": {"type": "enabled" if config.thinking_enabled else "disabled"}}


def _siliconflow_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    if config.thinking_enabled:
        return {"enable_thinking": True}
    return {}


def _minimax_fields(config: ProviderConfig, model: str) -> Dict[str, Any]:
    return {"reasoning_split": True}


_BUILTIN_SPECS: List[ProviderSpec] = [
    ProviderSpec("openai", "OpenAI", "openai", "https://api.openai.com/v1", extra_fields=_openai_fields),
    ProviderSpec("claude", "Claude", "anthropic", "https://api.anthropic.com/v1",
                 extra_fields=_claude_fields, default_max_tokens=ANTHROPIC_DEFAULT_MAX_TOKENS),
    ProviderSpec("gemini", "Gemini", "gemini", "https://generativelanguage.googleapis.com/v1beta",
                 extra_fields=_gemini_fields),
    ProviderSpec("deepseek", "DeepSeek", "openai", "https://api.deepseek.com/v1",
                 default_models=("deepseek-chat", "deepseek-reasoner"), extra_fields=_deepseek_fields),
    ProviderSpec("mistral", "Mistral", "openai", "https://api.mistral.ai/v1"),
    ProviderSpec("groq", "Groq", "openai", "https://api.groq.com/openai/v1"),
    ProviderSpec("openrouter", "OpenRouter", "openai", "https://openrouter.ai/api/v1"),
    ProviderSpec(
        "kimi", "Kimi", "openai", "https://api.moonshot.cn/v1",
        endpoints=(("China", "https://api.moonshot.cn/v1"), ("Global", "https://api.moonshot.ai/v1")),
        extra_fields=_kimi_fields,
        default_temperature=lambda config: 1.0 if config.thinking_enabled else 0.6,
        default_max_tokens=16000,
    ),
    ProviderSpec(
        "glm", "GLM", "openai", "https://open.bigmodel.cn/api/paas/v4",
        endpoints=(("China", "https://open.bigmodel.cn/api/paas/v4"), ("Global", "https://api.z.ai/api/paas/v4")),
        extra_fields=_glm_fields,
    ),
    ProviderSpec(
        "siliconflow", "SiliconFlow", "openai", "https://api.siliconflow.cn/v1",
        endpoints=(("China", "https://api.siliconflow.cn/v1"), ("Global", "https://api.siliconflow.com/v1")),
        extra_fields=_siliconflow_fields,
    ),
    ProviderSpec(
        "minimax", "MiniMax", "anthropic", "https://api.minimaxi.com/anthropic",
        endpoints=(("China", "https://api.minimaxi.com/anthropic"), ("Global", "https://api.minimax.io/anthropic")),
        default_models=("MiniMax-M2",),
        extra_fields=_minimax_fields,
        default_max_tokens=ANTHROPIC_DEFAULT_MAX_TOKENS,
    ),
    ProviderSpec("xai", "xAI", "openai", "https://api.x.ai/v1"),
]

PROVIDER_SPECS: Dict[str, ProviderSpec] = {spec.id: spec for spec in _BUILTIN_SPECS}

_GENERIC_SPECS: Dict[str, ProviderSpec] = {
    "openai": ProviderSpec("custom", "Custom", "openai", ""),
    "anthropic": ProviderSpec("custom", "Custom", "anthropic", "", default_max_tokens=ANTHROPIC_DEFAULT_MAX_TOKENS),
    "gemini": ProviderSpec("custom", "Custom", "gemini", ""),
}


def spec_for_config(config: ProviderConfig) -> ProviderSpec:
    """The strategy record driving requests for ``config``."""
    spec = PROVIDER_SPECS.get(config.id)
    if spec is not None and spec.wire_format == config.type:
        return spec
    return _GENERIC_SPECS[config.type]


def builtin_configs() -> List[ProviderConfig]:
    """Default configurations for every built-in provider, ordered by display name."""
    ordered = sorted(_BUILTIN_SPECS, key=lambda spec: spec.name.lower())
    return [spec.build_config(order) for order, spec in enumerate(ordered)]
