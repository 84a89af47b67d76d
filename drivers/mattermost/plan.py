# Connection strategy resolution.
#
# Four optional settings decide how the driver talks to Mattermost:
#
#   B  webhook_bind_address  – run a local server for outgoing webhooks
#   W  webhook_url           – post through an incoming webhook
#   T  token                 – API session, token used as the password
#   L  login                 – API session with login/password
#
# They are not independent toggles.  The first matching row of _RULES wins:
#
#   B        → receive: webhook   send: W ? webhook : (T|L ? session : none)
#   W        → receive: T|L ? session : none        send: webhook
#   T        → receive: session   send: session     (token)
#   L        → receive: session   send: session     (password)
#   nothing  → ConfigError

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, NamedTuple

from services.error import ConfigError, raise_and_log


class Inbound(str, Enum):
    NONE    = "none"
    WEBHOOK = "webhook"
    SESSION = "session"


class Outbound(str, Enum):
    NONE    = "none"
    WEBHOOK = "webhook"
    SESSION = "session"


class Auth(str, Enum):
    NONE     = "none"
    TOKEN    = "token"
    PASSWORD = "password"


class Settings(NamedTuple):
    """Which of the four connection settings are present."""
    bind: bool
    webhook_url: bool
    token: bool
    login: bool

    @property
    def has_session_auth(self) -> bool:
        return self.token or self.login


@dataclass(frozen=True)
class ConnectionPlan:
    inbound: Inbound
    outbound: Outbound
    auth: Auth = Auth.NONE

    @property
    def needs_session(self) -> bool:
        return self.inbound is Inbound.SESSION or self.outbound is Outbound.SESSION

    def describe(self) -> str:
        return f"receive={self.inbound.value} send={self.outbound.value} auth={self.auth.value}"


def _auth_for(s: Settings) -> Auth:
    if s.token:
        return Auth.TOKEN
    if s.login:
        return Auth.PASSWORD
    return Auth.NONE


def _bind_plan(s: Settings) -> ConnectionPlan:
    if s.webhook_url:
        return ConnectionPlan(Inbound.WEBHOOK, Outbound.WEBHOOK)
    if s.has_session_auth:
        return ConnectionPlan(Inbound.WEBHOOK, Outbound.SESSION, _auth_for(s))
    return ConnectionPlan(Inbound.WEBHOOK, Outbound.NONE)


def _webhook_url_plan(s: Settings) -> ConnectionPlan:
    if s.has_session_auth:
        return ConnectionPlan(Inbound.SESSION, Outbound.WEBHOOK, _auth_for(s))
    return ConnectionPlan(Inbound.NONE, Outbound.WEBHOOK)


def _session_plan(s: Settings) -> ConnectionPlan:
    return ConnectionPlan(Inbound.SESSION, Outbound.SESSION, _auth_for(s))


_RULES: list[tuple[Callable[[Settings], bool], Callable[[Settings], ConnectionPlan]]] = [
    (lambda s: s.bind,        _bind_plan),
    (lambda s: s.webhook_url, _webhook_url_plan),
    (lambda s: s.token,       _session_plan),
    (lambda s: s.login,       _session_plan),
]


def resolve_plan(
    bind_address: str = "",
    webhook_url: str = "",
    token: str = "",
    login: str = "",
) -> ConnectionPlan:
    """Pick the connection strategy for the given settings.

    Raises ``ConfigError`` when none of the four settings is present.
    """
    settings = Settings(bool(bind_address), bool(webhook_url), bool(token), bool(login))
    for matches, build in _RULES:
        if matches(settings):
            return build(settings)
    raise_and_log("no connection method configured", ConfigError)
