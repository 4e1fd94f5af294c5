from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class InstanceType(str, Enum):
    YUNZAI = "yunzai"
    GSUID = "gsuid"
    NONEBOT = "nonebot"


class InstanceStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class RedisMode(str, Enum):
    SHARED = "shared"
    INDEPENDENT = "independent"


DEFAULT_PORTS = {
    InstanceType.YUNZAI: 2536,
    InstanceType.GSUID: 8080,
    InstanceType.NONEBOT: 8080,
}


class ProxyConfig(BaseModel):
    protocol: str = "http"
    host: str = ""
    port: Optional[int] = None
    auth: bool = False
    username: Optional[str] = None
    password: Optional[str] = None


class InstanceRecord(BaseModel):
    id: str
    name: str
    path: str
    type: InstanceType = InstanceType.YUNZAI
    port: Optional[int] = None
    proxy: Optional[ProxyConfig] = None
    auto_start: bool = False
    redis_mode: RedisMode = RedisMode.SHARED
    is_imported: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


class InstanceView(InstanceRecord):
    status: InstanceStatus = InstanceStatus.STOPPED


class InstanceCreate(BaseModel):
    name: str
    type: InstanceType = InstanceType.YUNZAI
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    path: Optional[str] = None
    auto_start: bool = False
    redis_mode: RedisMode = RedisMode.SHARED


class InstanceImport(BaseModel):
    path: str
    name: str
    port: Optional[int] = Field(default=None, ge=1, le=65535)


class InstanceRename(BaseModel):
    new_name: str


class PortUpdate(BaseModel):
    port: int = Field(ge=1, le=65535)


class CommandRequest(BaseModel):
    command: str


class AutoStartUpdate(BaseModel):
    auto_start: bool


class KeepAliveUpdate(BaseModel):
    enabled: bool
