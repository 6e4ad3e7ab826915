from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone as tz
from enum import Enum
import logging
import re
import uuid

logger = logging.getLogger(__name__)

# 24h clock, 00:00-23:59
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class Channel(str, Enum):
    INAPP = "inapp"
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    ZALO = "zalo"
    VIBER = "viber"

class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    SKIPPED = "skipped"

class JobStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    FAILED = "failed"

class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    DONE = "DONE"
    DEAD = "DEAD"

class LinkAction(str, Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    LINK = "link"

class AuditAction(str, Enum):
    # Jobs
    NOTIFICATION_JOB_CREATED = "NOTIFICATION_JOB_CREATED"
    NOTIFICATION_JOB_FAILED = "NOTIFICATION_JOB_FAILED"

    # Deliveries
    DELIVERY_DEFERRED_QUIET_HOURS = "DELIVERY_DEFERRED_QUIET_HOURS"
    DELIVERY_RETRY_SCHEDULED = "DELIVERY_RETRY_SCHEDULED"
    DELIVERY_DEAD_LETTERED = "DELIVERY_DEAD_LETTERED"
    DELIVERY_STATUS_WEBHOOK_UNMATCHED = "DELIVERY_STATUS_WEBHOOK_UNMATCHED"

    # Chat identity linking
    LINK_CODE_ISSUED = "LINK_CODE_ISSUED"
    LINK_CODE_REDEEMED = "LINK_CODE_REDEEMED"
    LINK_CODE_REJECTED = "LINK_CODE_REJECTED"

    # Provider credentials
    OAUTH_TOKEN_REFRESHED = "OAUTH_TOKEN_REFRESHED"
    OAUTH_TOKEN_REFRESH_FAILED = "OAUTH_TOKEN_REFRESH_FAILED"


# ============================================================================
# MODELS
# ============================================================================

class QuietHours(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: Optional[str] = None  # "HH:MM"
    end: Optional[str] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def _valid_hhmm(cls, value):
        """A malformed boundary counts as missing, so the window never applies."""
        if value is None:
            return None
        text = str(value).strip()
        if not HHMM_RE.match(text):
            logger.warning(f"Ignoring malformed quiet-hours boundary {value!r}")
            return None
        return text

class ContactInfo(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: Optional[str] = None
    phone: Optional[str] = None
    fcm_tokens: Optional[List[str]] = Field(default_factory=list, alias="fcmTokens")
    zalo_user_id: Optional[str] = Field(default=None, alias="zaloUserId")
    viber_user_id: Optional[str] = Field(default=None, alias="viberUserId")

    @field_validator("fcm_tokens", mode="before")
    @classmethod
    def _token_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [t for t in value if isinstance(t, str) and t.strip()]

class UserPreference(BaseModel):
    """Per-user delivery settings (userNotificationPreferences/{uid})."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    uid: str
    language: Optional[str] = None
    timezone: Optional[str] = None
    quiet_hours: Optional[QuietHours] = Field(default=None, alias="quietHours")
    contact: ContactInfo = Field(default_factory=ContactInfo)

    @field_validator("contact", mode="before")
    @classmethod
    def _contact_or_empty(cls, value):
        return value if isinstance(value, (dict, ContactInfo)) else {}

    @field_validator("quiet_hours", mode="before")
    @classmethod
    def _quiet_hours_or_none(cls, value):
        return value if isinstance(value, (dict, QuietHours)) else None

class JobAudience(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    uid: Optional[str] = None
    topic: Optional[str] = None

class NotificationJobCreate(BaseModel):
    """POST /api/notifications/jobs body."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    template_id: str = Field(..., alias="templateId", min_length=1)
    audience: JobAudience
    data: Dict[str, Any] = Field(default_factory=dict)
    required_channels: Optional[List[Channel]] = Field(default=None, alias="requiredChannels")
    topic: Optional[str] = None

class LinkCodeRequest(BaseModel):
    """POST /api/zalo/link-code body. Length is clamped server-side."""
    length: Optional[int] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz.utc))
