from __future__ import annotations

import ipaddress
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SharedNetworkCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    internal: bool = False
    subnet: str | None = None  # CIDR, e.g. "172.28.0.0/16"
    gateway: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("subnet")
    @classmethod
    def _check_subnet(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        try:
            return str(ipaddress.ip_network(value, strict=False))
        except ValueError as e:
            raise ValueError(f"subnet must be a CIDR block: {e}") from e

    @field_validator("gateway")
    @classmethod
    def _check_gateway(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        try:
            return str(ipaddress.ip_address(value))
        except ValueError as e:
            raise ValueError(f"gateway must be an IP address: {e}") from e

    @model_validator(mode="after")
    def _gateway_in_subnet(self) -> "SharedNetworkCreate":
        if self.gateway and not self.subnet:
            raise ValueError("gateway requires a subnet")
        if self.gateway and self.subnet:
            if ipaddress.ip_address(self.gateway) not in ipaddress.ip_network(self.subnet):
                raise ValueError("gateway must be inside the subnet")
        return self


class ManagedNetworkOut(BaseModel):
    id: str
    name: str
    engine_name: str
    host_id: str
    team_id: str | None = None
    driver: str
    scope: str
    project_id: str | None = None
    environment_id: str | None = None
    subnet: str | None = None
    gateway: str | None = None
    is_internal: bool = False
    is_attachable: bool = True
    is_proxy_network: bool = False
    is_encrypted_overlay: bool = False
    docker_id: str | None = None
    status: str
    error_message: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NetworkDetailsOut(BaseModel):
    network: ManagedNetworkOut
    engine: dict | None = None  # docker inspect output, None when absent


class ResourceNetworkOut(BaseModel):
    id: str
    resource_type: str
    resource_id: str
    managed_network_id: str
    aliases: list[str] | None = None
    ipv4_address: str | None = None
    is_auto_attached: bool
    is_connected: bool
    connected_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class HostSyncOut(BaseModel):
    discovered: int = 0
    adopted: int = 0
    checked: int = 0
    recreated: int = 0
    refreshed: int = 0
    failed: int = 0
    orphaned: int = 0


class ProxyMigrationOut(BaseModel):
    proxy_network: str | None = None
    proxy_connected: bool = False
    resources_migrated: int = 0
    resources_failed: int = 0
    errors: list[str] = Field(default_factory=list)


class ProxyCleanupOut(BaseModel):
    disconnected: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class NetworkErrorOut(BaseModel):
    network_id: str
    engine_name: str
    error_message: str | None = None


class HostSyncStatusOut(BaseModel):
    host_id: str
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    errors: list[NetworkErrorOut] = Field(default_factory=list)
    last_synced_at: datetime | None = None
