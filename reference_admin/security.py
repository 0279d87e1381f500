"""
Authorization gate for article references.

The fronting proxy authenticates the user and forwards the username and
roles as headers. Handlers call `ensure_can_manage` with the resolved
article before doing anything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from fastapi import Header

from reference_admin.config import get_settings
from reference_admin.db import ArticleRow
from reference_admin.errors import AccessDeniedError


@dataclass(frozen=True)
class Actor:
    username: Optional[str] = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_anonymous(self) -> bool:
        return not self.username


def get_current_actor(
    x_user: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> Actor:
    roles = frozenset(
        role.strip() for role in (x_user_roles or "").split(",") if role.strip()
    )
    return Actor(username=(x_user or "").strip() or None, roles=roles)


def can_manage(article: ArticleRow, actor: Actor, admin_role: Optional[str] = None) -> bool:
    if actor.is_anonymous:
        return False
    if (admin_role or get_settings().admin_role) in actor.roles:
        return True
    return article.author is not None and article.author == actor.username


def ensure_can_manage(article: ArticleRow, actor: Actor) -> None:
    if not can_manage(article, actor):
        raise AccessDeniedError()
