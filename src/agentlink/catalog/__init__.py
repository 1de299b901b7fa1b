"""モデルカタログ - 動的一覧・静的レジストリ・解決"""

from agentlink.catalog.copilot import (
    AuxiliaryClient,
    HttpCopilotClient,
    RemoteModel,
    fetch_copilot_models,
)
from agentlink.catalog.registry import MODEL_REGISTRY, get_all_models, get_models_for_sub_provider
from agentlink.catalog.resolver import ModelResolver

__all__ = [
    "AuxiliaryClient",
    "HttpCopilotClient",
    "MODEL_REGISTRY",
    "ModelResolver",
    "RemoteModel",
    "fetch_copilot_models",
    "get_all_models",
    "get_models_for_sub_provider",
]
