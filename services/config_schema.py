from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# ---------------------------------------------------------------------------
# Base for all driver config blocks — unknown keys are a validation error
# ---------------------------------------------------------------------------

class _DriverConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Settings shared by every driver
# ---------------------------------------------------------------------------

class GeneralConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    media_server_upload:   str = ""
    media_server_download: str = ""
    media_download_size:   int = 1_000_000


# ---------------------------------------------------------------------------
# Mattermost
# ---------------------------------------------------------------------------

class MattermostConfig(_DriverConfig):
    # Webhook strategies
    webhook_bind_address: str = ""
    webhook_url:          str = ""
    icon_url:             str = ""
    # Session (API) strategies
    token:    str = ""
    login:    str = ""
    password: str = ""
    team:     str = ""
    server:   str = ""
    no_tls:          CoercedBool = False
    skip_tls_verify: CoercedBool = False
    # Message handling
    edit_suffix:               str         = ""
    edit_disable:              CoercedBool = False
    prefix_messages_with_nick: CoercedBool = False

    @model_validator(mode="after")
    def _check_session_auth(self) -> MattermostConfig:
        if self.token or self.login:
            if not self.server or not self.team:
                raise ValueError("'token'/'login' requires 'server' and 'team'")
        if self.login and not self.token and not self.password:
            raise ValueError("'login' requires 'password' (or use 'token')")
        return self


# ---------------------------------------------------------------------------
# Gateway rules: every channel listed in one rule is relayed to all others
# ---------------------------------------------------------------------------

class GatewayRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name:     str            = ""
    channels: dict[str, str] = Field(default_factory=dict)  # instance_id → channel name


# ---------------------------------------------------------------------------
# Top-level application config
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    general:    GeneralConfig               = Field(default_factory=GeneralConfig)
    mattermost: dict[str, MattermostConfig] = {}
    gateway:    list[GatewayRule]           = []
