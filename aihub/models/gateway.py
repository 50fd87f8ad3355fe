"""
AI Gateway Database Models.

This module contains all database models for the request-dispatch pipeline:
- AiProvider: One row per vendor integration
- AiCredential: Encrypted vendor credentials with rotation weight
- AiModelRate: Per-provider model pricing
- ModelCall: One row per dispatch attempt
- Usage: One row per billed request
- AiModelStatus: Last known availability per provider model
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from aihub.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Enums
# =============================================================================

class CredentialType(str, enum.Enum):
    """Shapes of a stored credential value."""

    API_KEY = "api_key"                  # {"api_key": ...}
    ACCESS_KEY_PAIR = "access_key_pair"  # {"access_key_id": ..., "secret_access_key": ...}
    CUSTOM = "custom"


class CallStatus(str, enum.Enum):
    """Outcome of one dispatch attempt."""

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


# =============================================================================
# Models
# =============================================================================

class AiProvider(Base):
    """
    Vendor integration record.

    Region is mandatory for region-scoped vendors such as bedrock,
    base_url for everything else that is not the vendor default.
    """

    __tablename__ = "ai_providers"
    __table_args__ = (
        UniqueConstraint("name", name="uq_ai_providers_name"),
        Index("ix_ai_providers_enabled", "enabled"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(50), nullable=False)
    display_name = Column(String(255))
    base_url = Column(String(2000))
    region = Column(String(50))
    enabled = Column(Boolean, default=True, nullable=False)
    config = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    credentials = relationship("AiCredential", back_populates="provider", cascade="all, delete-orphan")
    model_rates = relationship("AiModelRate", back_populates="provider", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<AiProvider(id={self.id}, name={self.name}, enabled={self.enabled})>"


class AiCredential(Base):
    """
    Credential bound to one provider.

    `credential_value` holds Fernet ciphertext for api_key and
    secret_access_key; access_key_id is stored in plaintext.
    """

    __tablename__ = "ai_credentials"
    __table_args__ = (
        Index("ix_ai_credentials_provider_id", "provider_id"),
        Index("ix_ai_credentials_active", "active"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    provider_id = Column(String(64), ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)

    credential_value = Column(JSON, nullable=False, default=dict)
    credential_type = Column(String(32), default=CredentialType.API_KEY.value, nullable=False)

    active = Column(Boolean, default=True, nullable=False)
    weight = Column(Integer, default=100, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime(timezone=True))
    error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    provider = relationship("AiProvider", back_populates="credentials")

    def __repr__(self):
        return f"<AiCredential(id={self.id}, provider_id={self.provider_id}, active={self.active})>"


class AiModelRate(Base):
    """Price table entry for a (provider, model, type) tuple."""

    __tablename__ = "ai_model_rates"
    __table_args__ = (
        Index("ix_ai_model_rates_model", "model"),
        UniqueConstraint("provider_id", "model", "type", name="uq_ai_model_rates_provider_model_type"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    provider_id = Column(String(64), ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False)
    model = Column(String(500), nullable=False)
    model_display = Column(String(255))
    description = Column(String(1000))
    type = Column(String(32), nullable=False)

    input_rate = Column(Numeric(precision=20, scale=10), default=0, nullable=False)
    output_rate = Column(Numeric(precision=20, scale=10), default=0, nullable=False)

    # Example: {"readRate": 0.0001, "writeRate": 0.00125}
    caching = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(),
                        onupdate=func.now(), nullable=False)

    provider = relationship("AiProvider", back_populates="model_rates")

    def __repr__(self):
        return f"<AiModelRate(model={self.model}, type={self.type}, provider_id={self.provider_id})>"


class ModelCall(Base):
    """
    Record of one dispatch attempt to one provider.

    A user request that fails over across two providers produces two rows;
    at most one of them has status=success.
    """

    __tablename__ = "model_calls"
    __table_args__ = (
        Index("ix_model_calls_user_did", "user_did"),
        Index("ix_model_calls_request_id", "request_id"),
        Index("ix_model_calls_status", "status"),
        Index("ix_model_calls_call_time", "call_time"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    request_id = Column(String(64))
    attempt = Column(Integer, default=1, nullable=False)

    user_did = Column(String(255), nullable=False)
    app_did = Column(String(255))
    provider_id = Column(String(64))
    credential_id = Column(String(64))
    model = Column(String(500), nullable=False)
    type = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False)

    total_usage = Column(Integer, default=0, nullable=False)
    usage_metrics = Column(JSON, default=dict)
    credits = Column(Numeric(precision=20, scale=10))

    duration_ms = Column(Integer)
    ttfb_ms = Column(Integer)
    error_reason = Column(Text)

    # Epoch seconds of the attempt start
    call_time = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ModelCall(id={self.id}, model={self.model}, status={self.status})>"


class Usage(Base):
    """One row per successfully billed request."""

    __tablename__ = "usages"
    __table_args__ = (
        Index("ix_usages_user_did", "user_did"),
        Index("ix_usages_app_id", "app_id"),
        Index("ix_usages_created_at", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    user_did = Column(String(255))
    app_id = Column(String(255))
    provider_id = Column(String(64))
    type = Column(String(32), nullable=False)
    model = Column(String(500), nullable=False)

    prompt_tokens = Column(Integer, default=0, nullable=False)
    completion_tokens = Column(Integer, default=0, nullable=False)
    cache_creation_input_tokens = Column(Integer, default=0, nullable=False)
    cache_read_input_tokens = Column(Integer, default=0, nullable=False)
    number_of_image_generation = Column(Integer, default=0, nullable=False)
    media_duration = Column(Float, default=0, nullable=False)

    used_credits = Column(Numeric(precision=20, scale=10))
    usage_report_status = Column(String(20))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Usage(id={self.id}, model={self.model}, used_credits={self.used_credits})>"


class AiModelStatus(Base):
    """Last known availability of a provider model."""

    __tablename__ = "ai_model_statuses"
    __table_args__ = (
        UniqueConstraint("provider_id", "model", "type", name="uq_ai_model_statuses_provider_model_type"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    provider_id = Column(String(64), nullable=False)
    model = Column(String(500), nullable=False)
    type = Column(String(32))
    available = Column(Boolean, nullable=False)
    response_time = Column(Integer)

    # Example: {"code": "INVALID_API_KEY", "message": "..."}
    error = Column(JSON)

    last_checked = Column(DateTime(timezone=True), server_default=func.now(),
                          onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<AiModelStatus(model={self.model}, available={self.available})>"
