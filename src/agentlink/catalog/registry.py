"""
静的モデルレジストリ

サブプロバイダタグをキーとした参照テーブル（I/Oなし）
"""

from typing import Dict, List, Optional

from agentlink.models import ModelDescriptor


def _model(
    model_id: str,
    name: str,
    provider: str,
    context_window: int,
    supports_thinking: bool = False,
    short_name: str = "",
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        name=name,
        short_name=short_name or name,
        provider=provider,
        context_window=context_window,
        supports_thinking=supports_thinking,
    )


MODEL_REGISTRY: Dict[str, List[ModelDescriptor]] = {
    "anthropic": [
        _model("claude-opus-4-1", "Claude Opus 4.1", "anthropic", 200_000, True, "Opus"),
        _model("claude-sonnet-4-6", "Claude Sonnet 4.6", "anthropic", 200_000, True, "Sonnet"),
        _model("claude-haiku-4-5", "Claude Haiku 4.5", "anthropic", 200_000, False, "Haiku"),
    ],
    "openai": [
        _model("gpt-5", "GPT-5", "openai", 400_000, True),
        _model("gpt-5-mini", "GPT-5 mini", "openai", 400_000, True),
        _model("gpt-4o", "GPT-4o", "openai", 128_000),
    ],
    "openai-codex": [
        _model("gpt-5-codex", "GPT-5 Codex", "openai-codex", 400_000, True, "Codex"),
        _model("gpt-5", "GPT-5", "openai-codex", 400_000, True),
    ],
    "google": [
        _model("gemini-2.5-pro", "Gemini 2.5 Pro", "google", 1_048_576, True),
        _model("gemini-2.5-flash", "Gemini 2.5 Flash", "google", 1_048_576, True),
    ],
    "openrouter": [
        _model("anthropic/claude-sonnet-4", "Claude Sonnet 4 (OpenRouter)", "openrouter", 200_000, True),
        _model("openai/gpt-4o", "GPT-4o (OpenRouter)", "openrouter", 128_000),
    ],
    "groq": [
        _model("llama-3.3-70b-versatile", "Llama 3.3 70B", "groq", 131_072),
    ],
    "mistral": [
        _model("mistral-large-latest", "Mistral Large", "mistral", 131_072),
        _model("codestral-latest", "Codestral", "mistral", 256_000),
    ],
    "xai": [
        _model("grok-4", "Grok 4", "xai", 256_000, True),
    ],
    "cerebras": [
        _model("qwen-3-coder-480b", "Qwen 3 Coder 480B", "cerebras", 131_072),
    ],
}


def get_models_for_sub_provider(sub_provider: str) -> List[ModelDescriptor]:
    """サブプロバイダのモデル一覧（未知のタグは空）"""
    return list(MODEL_REGISTRY.get(sub_provider, []))


def get_all_models() -> List[ModelDescriptor]:
    """登録済みの全モデル（識別子の重複は先勝ち）"""
    seen = set()
    models: List[ModelDescriptor] = []
    for entries in MODEL_REGISTRY.values():
        for model in entries:
            if model.id in seen:
                continue
            seen.add(model.id)
            models.append(model)
    return models


def lookup(sub_provider: Optional[str]) -> List[ModelDescriptor]:
    if sub_provider:
        return get_models_for_sub_provider(sub_provider)
    return get_all_models()
