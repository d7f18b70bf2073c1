"""
Domain models shared by the webhook pipeline
Rules, platform settings, normalized sync records and collaborator interfaces
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WebhookSource(str, Enum):
    AMOCRM = "amocrm"
    LPTRACKER = "lptracker"


class Platform(str, Enum):
    AMOCRM = "amocrm"
    LPTRACKER = "lptracker"


class ActionType(str, Enum):
    SYNC_TO_AMOCRM = "sync_to_amocrm"
    SYNC_TO_LPTRACKER = "sync_to_lptracker"


class MatchStrategy(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    NAME = "name"


class SyncAction(BaseModel):
    """Single action of a rule; type is kept as a plain string so unknown types survive loading"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    field_mappings: Dict[str, str] = Field(default_factory=dict, alias="fieldMappings")
    amocrm_pipeline_id: Optional[str] = Field(None, alias="amocrmPipelineId")
    amocrm_status_id: Optional[str] = Field(None, alias="amocrmStatusId")
    lptracker_stage_id: Optional[str] = Field(None, alias="lptrackerStageId")
    lptracker_project_id: Optional[str] = Field(None, alias="lptrackerProjectId")
    search_by: str = Field(default=MatchStrategy.PHONE.value, alias="searchBy")

    # id из AmoCRM приходят числами
    @field_validator(
        "amocrm_pipeline_id", "amocrm_status_id", "lptracker_stage_id", "lptracker_project_id",
        mode="before"
    )
    @classmethod
    def stringify_id(cls, v):
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("field_mappings", mode="before")
    @classmethod
    def stringify_mappings(cls, v):
        if not v:
            return {}
        if not isinstance(v, dict):
            return v
        return {str(source): str(target) for source, target in v.items() if target not in (None, "")}

    @field_validator("search_by", mode="before")
    @classmethod
    def default_search_by(cls, v):
        return v or MatchStrategy.PHONE.value


class SyncRule(BaseModel):
    """
    User-defined rule. Conditions and actions are kept in their stored JSON
    shape so that a malformed tree only disables the rule instead of failing
    the whole rule list:

        conditions = {"operator": "AND", "rules": [{"type", "field", "value"}]}
        actions = {"list": [{"type": "sync_to_amocrm", ...}]}
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: str = Field(alias="userId")
    name: str = ""
    webhook_source: str = Field(alias="webhookSource")
    is_active: bool = Field(default=True, alias="isActive")
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: Dict[str, Any] = Field(default_factory=dict)
    execution_count: int = Field(default=0, alias="executionCount")

    @property
    def action_list(self) -> List[Any]:
        actions = self.actions.get("list") if isinstance(self.actions, dict) else None
        return actions if isinstance(actions, list) else []

    @property
    def condition_list(self) -> List[Any]:
        rules = self.conditions.get("rules") if isinstance(self.conditions, dict) else None
        return rules if isinstance(rules, list) else []


class PlatformSettings(BaseModel):
    """Per-user credentials and identity on one CRM platform"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    platform: Platform
    subdomain: Optional[str] = None
    project_id: Optional[str] = Field(None, alias="projectId")
    api_key: Optional[str] = Field(None, alias="apiKey")


class NormalizedRecord(BaseModel):
    """Source-independent payload handed to a CRM sync adapter"""

    name: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    email: str = ""
    deal_name: str
    price: float = 0
    custom_fields: Any = Field(default_factory=list)
    source: str = "webhook_automation"
    field_mappings: Dict[str, str] = Field(default_factory=dict)
    mapped_values: Dict[str, Any] = Field(default_factory=dict)
    amocrm_pipeline_id: Optional[str] = None
    amocrm_status_id: Optional[str] = None
    lptracker_stage_id: Optional[str] = None
    lptracker_project_id: Optional[str] = None


class ConfigurationStore(Protocol):
    """Persistence of rules, settings and counters; owned outside the core"""

    async def get_sync_rules(self, user_id: str) -> List[SyncRule]: ...

    async def get_settings(self, user_id: str, platform: Platform) -> Optional[PlatformSettings]: ...

    async def get_metadata(self, user_id: str, platform: Platform, kind: str) -> Optional[Any]: ...

    async def increment_rule_execution(self, rule_id: int) -> None: ...

    async def get_all_settings(self, platform: Platform) -> List[PlatformSettings]: ...

