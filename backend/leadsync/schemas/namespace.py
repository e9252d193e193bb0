"""
Pydantic schemas for namespaces.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class NamespaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    keywords: List[str] = Field(default_factory=list)
    crm_config: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Lowercase, starts with a letter"""
        if not re.match(r"^[a-z][a-z0-9_-]*$", v):
            raise ValueError(
                "Name must start with a lowercase letter and contain only "
                "lowercase letters, numbers, '_' and '-'"
            )
        return v


class NamespaceUpdate(BaseModel):
    keywords: Optional[List[str]] = None
    crm_config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class NamespaceResponse(BaseModel):
    name: str
    keywords: List[str]
    is_default: bool
    is_active: bool
    crm_config: Dict[str, Any] = {}
