"""Base schema"""
from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """ORMオブジェクトから生成できる共通スキーマ"""

    model_config = ConfigDict(from_attributes=True, use_enum_values=False)
