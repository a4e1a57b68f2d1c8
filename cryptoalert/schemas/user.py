"""User schemas"""
import json
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from .base import BaseSchema


class UserContact(BaseSchema):
    """アラート通知に必要なユーザーの連絡先と通知設定"""
    id: str = Field(..., max_length=36)
    email: Optional[str] = None
    phone_number: Optional[str] = None
    push_subscription: Optional[Dict[str, Any]] = None
    email_enabled: bool = True
    sms_enabled: bool = False
    push_enabled: bool = False

    @field_validator("push_subscription", mode="before")
    @classmethod
    def parse_subscription(cls, v):
        """DBにはJSON文字列で保存されている"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except ValueError:
                return None
        return v
