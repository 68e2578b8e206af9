"""Actor context for audit entries, consent records and key derivation."""

import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass

from ..secrets import MaskedSecret

DEFAULT_APPLICATION_NAME = "healthmint-compliance"


@dataclass
class AuditContext:
    actor: str | None = None
    session_token: MaskedSecret | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    application_name: str = DEFAULT_APPLICATION_NAME

    @property
    def is_authenticated(self) -> bool:
        return self.actor is not None and self.session_token is not None


_audit_context: ContextVar[AuditContext | None] = ContextVar("audit_context", default=None)


def get_audit_context() -> AuditContext:
    """Get current audit context, creating default if none exists."""
    ctx = _audit_context.get()
    if ctx is None:
        ctx = AuditContext()
    return ctx


def set_audit_context(ctx: AuditContext) -> None:
    _audit_context.set(ctx)


def clear_audit_context() -> None:
    _audit_context.set(None)


@contextmanager
def audit_context(
    actor: str | None = None,
    session_token: str | MaskedSecret | None = None,
    client_ip: str | None = None,
    user_agent: str | None = None,
    application_name: str | None = None,
):
    """Scope an actor to the enclosed block. Restores previous context on exit."""
    previous = _audit_context.get()

    if isinstance(session_token, str):
        session_token = MaskedSecret(session_token)

    ctx = AuditContext(
        actor=actor,
        session_token=session_token,
        client_ip=client_ip,
        user_agent=user_agent,
        application_name=application_name or DEFAULT_APPLICATION_NAME,
    )
    _audit_context.set(ctx)

    try:
        yield ctx
    finally:
        _audit_context.set(previous)


def create_cli_context(actor: str | None = None) -> AuditContext:
    """Context for CLI operations: the OS user, no session credential."""
    if actor is None:
        actor = os.environ.get("USER", os.environ.get("USERNAME", "cli-user"))
    return AuditContext(actor=actor, application_name=DEFAULT_APPLICATION_NAME)
