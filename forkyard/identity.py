"""
FORKYARD Identity — deterministic agent naming.

A session handle is hashed into a short hex tag, and the tag seeds a
pseudonym generator. The same seed always yields the same author,
branch and workspace name, so a session can re-enter the workspace it
created earlier and every commit stays attributable.
"""

from __future__ import annotations

import hashlib
import re
from enum import Enum

from faker import Faker
from loguru import logger
from pydantic import BaseModel

# <middleName>-<8 hex chars>, e.g. "harold-1a2b3c4d"
AGENT_NAME_PATTERN = re.compile(r"^([a-z]+)-([a-f0-9]{8})$")

DEFAULT_EMAIL_DOMAIN = "forkyard.dev"

_faker = Faker("en_US")


class IsolationPolicy(str, Enum):
    """How much of the repository an agent shares with its parent."""
    LAZY = "lazy"   # shared working tree
    WT = "wt"       # fully forked worktree


DEFAULT_NAMESPACES: dict[str, str] = {
    IsolationPolicy.LAZY.value: "lazy",
    IsolationPolicy.WT.value: "wt",
}


class AgentIdentity(BaseModel):
    hash: str
    middle_name: str
    user_name: str
    user_email: str
    branch_name: str

    @property
    def workspace_name(self) -> str:
        return f"{self.middle_name}-{self.hash}"


def is_agent_name(name: str) -> bool:
    return bool(AGENT_NAME_PATTERN.match(name))


def parse_agent_name(name: str) -> tuple[str, str] | None:
    """Split an established agent name into (middle_name, hash)."""
    match = AGENT_NAME_PATTERN.match(name)
    if not match:
        return None
    return match.group(1), match.group(2)


def _pseudonym(seed: int) -> str:
    _faker.seed_instance(seed)
    name = re.sub(r"[^a-z]", "", _faker.first_name().lower())
    return name or "agent"


def _build(middle_name: str, digest: str, namespace: str, email_domain: str) -> AgentIdentity:
    return AgentIdentity(
        hash=digest,
        middle_name=middle_name,
        user_name=middle_name[:1].upper() + middle_name[1:],
        user_email=f"{middle_name}@{email_domain}",
        branch_name=f"{namespace}/{middle_name}-{digest}",
    )


def derive_identity(
    seed: str,
    known_process_name: str | None = None,
    namespace: str = DEFAULT_NAMESPACES[IsolationPolicy.WT.value],
    email_domain: str = DEFAULT_EMAIL_DOMAIN,
) -> AgentIdentity:
    """
    Derive the identity for a session.

    If ``known_process_name`` is an established agent name it is reused
    as-is; otherwise the identity is computed from ``seed``. Pure function,
    never fails.
    """
    if known_process_name:
        parsed = parse_agent_name(known_process_name)
        if parsed:
            middle_name, digest = parsed
            logger.debug(f"[IDENTITY] Reusing established name {known_process_name}")
            return _build(middle_name, digest, namespace, email_domain)

    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:8]
    middle_name = _pseudonym(int(digest, 16))
    return _build(middle_name, digest, namespace, email_domain)
