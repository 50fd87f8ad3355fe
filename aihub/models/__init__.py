# Database models
from aihub.models.gateway import (
    # Gateway models
    AiProvider,
    AiCredential,
    AiModelRate,
    ModelCall,
    Usage,
    AiModelStatus,
    # Gateway enums
    CredentialType,
    CallStatus,
)

__all__ = [
    "AiProvider",
    "AiCredential",
    "AiModelRate",
    "ModelCall",
    "Usage",
    "AiModelStatus",
    "CredentialType",
    "CallStatus",
]
