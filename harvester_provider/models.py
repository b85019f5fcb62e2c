from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from harvester_provider.db import Base


PROVIDER_TYPE_HARVESTER = "harvester"
FINALIZER_NAME = "machinerequest.butler.butlerlabs.dev/harvester-finalizer"


class MachinePhase(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    RUNNING = "Running"
    FAILED = "Failed"
    DELETING = "Deleting"


class MachineRequest(Base):
    __tablename__ = "machine_requests"

    namespace: Mapped[str] = mapped_column(String(63), primary_key=True)
    name: Mapped[str] = mapped_column(String(253), primary_key=True)
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    deletion_timestamp: Mapped[datetime | None] = mapped_column(DateTime)
    finalizers: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    # spec
    machine_name: Mapped[str] = mapped_column(String(253), nullable=False)
    provider_ref_name: Mapped[str] = mapped_column(String(253), nullable=False)
    provider_ref_namespace: Mapped[str | None] = mapped_column(String(63))
    cpu: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    disk_gb: Mapped[int] = mapped_column(Integer, nullable=False)
    image: Mapped[str | None] = mapped_column(String(253))
    network: Mapped[str | None] = mapped_column(String(253))
    user_data: Mapped[str | None] = mapped_column(Text)
    network_data: Mapped[str | None] = mapped_column(Text)
    labels: Mapped[dict[str, str]] = mapped_column(JSON, default=dict, nullable=False)

    # status
    phase: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(128))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    mac_address: Mapped[str | None] = mapped_column(String(64))
    failure_reason: Mapped[str | None] = mapped_column(String(128))
    failure_message: Mapped[str | None] = mapped_column(Text)
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    last_updated: Mapped[datetime | None] = mapped_column(DateTime)
    observed_generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    @property
    def provider_ref_key(self) -> tuple[str, str]:
        return self.provider_ref_namespace or self.namespace, self.provider_ref_name

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str = FINALIZER_NAME) -> bool:
        return finalizer in (self.finalizers or [])


class ProviderConfig(Base):
    __tablename__ = "provider_configs"

    namespace: Mapped[str] = mapped_column(String(63), primary_key=True)
    name: Mapped[str] = mapped_column(String(253), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    credentials_ref_name: Mapped[str] = mapped_column(String(253), nullable=False)
    credentials_ref_namespace: Mapped[str | None] = mapped_column(String(63))
    credentials_ref_key: Mapped[str | None] = mapped_column(String(253))

    harvester_namespace: Mapped[str | None] = mapped_column(String(63))
    default_network: Mapped[str | None] = mapped_column(String(253))
    default_image: Mapped[str | None] = mapped_column(String(253))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    namespace: Mapped[str | None] = mapped_column(String(63))
    name: Mapped[str | None] = mapped_column(String(253))
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
