from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MachineRequestCreate(BaseModel):
    name: str = Field(min_length=1, max_length=253)
    machine_name: str | None = Field(default=None, max_length=253)
    provider_ref_name: str = Field(min_length=1)
    provider_ref_namespace: str | None = None
    cpu: int = Field(ge=1)
    memory_mb: int = Field(ge=1)
    disk_gb: int = Field(ge=1)
    image: str | None = None
    network: str | None = None
    user_data: str | None = None
    network_data: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class ConditionRead(BaseModel):
    type: str
    status: str
    reason: str
    message: str
    observed_generation: int = 0
    last_transition_time: str | None = None


class MachineRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    namespace: str
    name: str
    uid: str
    generation: int
    resource_version: int
    created_at: datetime
    deletion_timestamp: datetime | None
    finalizers: list[str]

    machine_name: str
    provider_ref_name: str
    provider_ref_namespace: str | None
    cpu: int
    memory_mb: int
    disk_gb: int
    image: str | None
    network: str | None
    labels: dict[str, str]

    phase: str
    provider_id: str | None
    ip_address: str | None
    mac_address: str | None
    failure_reason: str | None
    failure_message: str | None
    conditions: list[ConditionRead]
    last_updated: datetime | None
    observed_generation: int


class ProviderConfigWrite(BaseModel):
    provider: str = "harvester"
    credentials_ref_name: str = Field(min_length=1)
    credentials_ref_namespace: str | None = None
    credentials_ref_key: str | None = None
    harvester_namespace: str | None = None
    default_network: str | None = None
    default_image: str | None = None


class ProviderConfigRead(ProviderConfigWrite):
    model_config = ConfigDict(from_attributes=True)

    namespace: str
    name: str
    updated_at: datetime


class EventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    namespace: str | None
    name: str | None
    severity: str
    reason: str
    message: str
