"""Pydantic schemas for the declarative topology file."""

import shlex
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _argv(value):
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


class HealthCheckSchema(BaseModel):
    """Health check definition."""
    model_config = ConfigDict(extra="forbid")

    type: Literal["http", "tcp", "command"] = "http"
    path: str = "/"
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    command: List[str] = Field(default_factory=list)
    interval_seconds: float = Field(default=10.0, gt=0)
    timeout_seconds: float = Field(default=5.0, gt=0)
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=0.0, ge=0)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value):
        return _argv(value)

    @model_validator(mode="after")
    def _check_type_fields(self):
        if self.type == "command" and not self.command:
            raise ValueError("command health check requires 'command'")
        if not self.path.startswith("/"):
            raise ValueError("health check path must start with '/'")
        return self


class ServiceSchema(BaseModel):
    """Service definition (compose-like)."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    image: Optional[str] = None
    build: Optional[str] = None
    command: List[str] = Field(default_factory=list)
    ports: List[int] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    volumes: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    health_check: Optional[HealthCheckSchema] = None
    profile: Literal["default", "build", "ssl"] = "default"
    restart_policy: Optional[Literal["never", "on-failure", "always"]] = None
    hostname: Optional[str] = None

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value):
        return _argv(value)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value):
        # Accept both {"KEY": "value"} and ["KEY=value"]
        if value is None:
            return {}
        if isinstance(value, list):
            env = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError(f"environment entry '{item}' must be KEY=VALUE")
                env[key] = val
            return env
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalize_depends_on(cls, value):
        # Compose long form: {db: {condition: service_healthy}}
        if isinstance(value, dict):
            return list(value.keys())
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, value):
        for port in value:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} out of range")
        if len(set(value)) != len(value):
            raise ValueError("ports must be unique")
        return value

    @model_validator(mode="after")
    def _image_xor_build(self):
        if bool(self.image) == bool(self.build):
            raise ValueError("exactly one of 'image' or 'build' is required")
        return self


class HeaderRewriteSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    set: Dict[str, str] = Field(default_factory=dict)
    remove: List[str] = Field(default_factory=list)


class RouteSchema(BaseModel):
    """Path-prefix route."""
    model_config = ConfigDict(extra="forbid")

    prefix: str
    service: str
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    strip_prefix: bool = False
    preserve_host: bool = True
    headers: HeaderRewriteSchema = Field(default_factory=HeaderRewriteSchema)
    timeout_seconds: float = Field(default=30.0, gt=0)
    retries: int = Field(default=0, ge=0, le=10)
    enabled: bool = True

    @field_validator("prefix")
    @classmethod
    def _check_prefix(cls, value):
        if not value.startswith("/"):
            raise ValueError(f"route prefix '{value}' must start with '/'")
        return value


class DomainSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=253)
    email: Optional[str] = None
    redirect_http: bool = True

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value):
        return value.strip().lower().rstrip(".")


class IngressSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "0.0.0.0"
    http_port: int = Field(default=80, ge=1, le=65535)
    https_port: Optional[int] = Field(default=443, ge=1, le=65535)
    challenge_prefix: str = "/.well-known/acme-challenge/"

    @field_validator("challenge_prefix")
    @classmethod
    def _check_challenge_prefix(cls, value):
        if not value.startswith("/"):
            raise ValueError("challenge_prefix must start with '/'")
        return value if value.endswith("/") else value + "/"


class TopologySchema(BaseModel):
    """Top-level topology document."""
    model_config = ConfigDict(extra="forbid")

    ingress: IngressSchema = Field(default_factory=IngressSchema)
    services: Union[Dict[str, ServiceSchema], List[ServiceSchema]]
    routes: List[RouteSchema] = Field(default_factory=list)
    domains: List[DomainSchema] = Field(default_factory=list)
